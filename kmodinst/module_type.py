# SPDX-License-Identifier: Apache-2.0
#
# Copyright (C) 2024, ARM Limited and contributors.
#
# Licensed under the Apache License, Version 2.0 (the "License"); you may
# not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS, WITHOUT
# WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
"""
Selection of the kernel module flavor to build.
"""

import os.path
from collections import namedtuple

from kmodinst.exception import ModuleTypeError
from kmodinst.utils import Loggable


ModuleType = namedtuple('ModuleType', ['id', 'letter', 'directory', 'license'])

MODULE_TYPES = (
    ModuleType('open', 'O', 'kernel-open', 'MIT/GPL'),
    ModuleType('proprietary', 'P', 'kernel', 'Proprietary'),
)
"""
Known kernel module types. ``directory`` is the name of the subdirectory of
the package holding the sources of that flavor.
"""

PREFERENCE_ORDER = ('proprietary', 'open')
"""
Module type ids from the most to the least preferred, used to choose the
default when several types are valid.
"""


class ModuleTypeSelector(Loggable):
    """
    Choose the kernel module type to build.

    :param package_dir: Root of the package, containing one subdirectory per
        module type.
    :type package_dir: str

    :param ui: Operator interface.
    :type ui: kmodinst.ui.UserInterface

    :param types: Known module types, see :data:`MODULE_TYPES`.
    :type types: list(ModuleType)

    ``gpu_compat`` parameters map a module type id to ``False`` when the
    detected GPUs cannot be driven by that module type. Missing ids are
    considered compatible.
    """
    def __init__(self, package_dir, ui, types=MODULE_TYPES):
        self.package_dir = package_dir
        self.ui = ui
        self.types = list(types)

    def _is_present(self, module_type):
        return os.path.isdir(os.path.join(self.package_dir, module_type.directory))

    @staticmethod
    def _is_compatible(module_type, gpu_compat):
        return (gpu_compat or {}).get(module_type.id, True)

    def valid_variants(self, gpu_compat=None):
        """
        Module types usable with this package and the detected GPUs.

        :returns: A tuple ``(types, default_index)``.
        :raises kmodinst.exception.ModuleTypeError: if no type is usable.
        """
        logger = self.logger

        def is_valid(module_type):
            if not self._is_present(module_type):
                logger.debug(f'Kernel module type "{module_type.id}" not shipped in this package')
                return False
            elif not self._is_compatible(module_type, gpu_compat):
                logger.debug(f'Kernel module type "{module_type.id}" is not compatible with the detected GPUs')
                return False
            else:
                return True

        valid = list(filter(is_valid, self.types))
        if not valid:
            raise ModuleTypeError('None of the kernel module types shipped with this package is compatible with the GPUs detected in this system')

        def preference(module_type):
            try:
                return PREFERENCE_ORDER.index(module_type.id)
            except ValueError:
                return len(PREFERENCE_ORDER)

        default = min(valid, key=preference)
        return (valid, valid.index(default))

    def _find(self, pred, what):
        for module_type in self.types:
            if pred(module_type):
                return module_type
        raise ModuleTypeError(f'Unknown kernel module type: {what}')

    def _force(self, module_type, gpu_compat):
        if not self._is_present(module_type):
            raise ModuleTypeError(f'The kernel module type "{module_type.id}" was requested, but the directory "{module_type.directory}" does not exist in this package')

        if not self._is_compatible(module_type, gpu_compat):
            self.ui.warn(f'The kernel module type "{module_type.id}" was requested, but it is not compatible with the GPUs detected in this system. The installed driver may not work.')

        return module_type

    def override_by_directory(self, directory, gpu_compat=None):
        """
        Force the module type whose sources are in ``directory``.
        """
        directory = directory.strip('/')
        module_type = self._find(lambda t: t.directory == directory, directory)
        return self._force(module_type, gpu_compat)

    def override_by_letter(self, letter, gpu_compat=None):
        """
        Force the module type identified by ``letter``, e.g. ``O`` for the
        open source kernel modules.
        """
        module_type = self._find(lambda t: t.letter == letter.upper(), letter)
        return self._force(module_type, gpu_compat)

    def select(self, override=None, gpu_compat=None):
        """
        Choose the module type to build.

        :param override: Module type forced by the operator, as a type letter
            or a directory name.
        :type override: str or None
        """
        if override:
            if len(override) == 1:
                module_type = self.override_by_letter(override, gpu_compat)
            else:
                module_type = self.override_by_directory(override, gpu_compat)
        else:
            valid, default = self.valid_variants(gpu_compat)
            if len(valid) > 1:
                idx = self.ui.multiple_choice(
                    'Multiple kernel module types are available for this system. Which would you like to use?',
                    [f'{t.id} ({t.license})' for t in valid],
                    default,
                )
            else:
                idx = default
            module_type = valid[idx]

        self.ui.log(f'Using kernel module type "{module_type.id}" from {os.path.join(self.package_dir, module_type.directory)}')
        return module_type

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
