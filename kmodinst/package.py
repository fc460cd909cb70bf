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
Kernel modules shipped by a driver package.
"""

import os.path
from collections.abc import Sequence

from kmodinst.utils import Loggable


class KernelModuleSpec:
    """
    One kernel module of the package.

    :param name: Canonical name of the module, as shown in
        ``/proc/modules``.
    :type name: str

    :param filename: Name of the module file, e.g. ``core.ko``.
    :type filename: str

    :param interface_filename: Name of the object built against the kernel,
        when the module is linked from an interface and a
        kernel-independent core object.
    :type interface_filename: str or None

    :param core_object_filename: Name of the kernel-independent core object
        linked with the interface.
    :type core_object_filename: str or None

    :param optional: If ``True``, failing to build or load that module is
        only a warning.
    :type optional: bool

    :param optional_module_dependee: Human readable description of what needs
        that module, e.g. ``"Unified Memory"``.
    :type optional_module_dependee: str or None

    :param disable_option: Name of the option disabling that module.
    :type disable_option: str or None
    """
    def __init__(self, name, filename, interface_filename=None, core_object_filename=None, optional=False, optional_module_dependee=None, disable_option=None):
        if bool(interface_filename) != bool(core_object_filename):
            raise ValueError(f'Kernel module "{name}" must have both an interface and a core object, or neither')

        if optional and not disable_option:
            raise ValueError(f'Optional kernel module "{name}" must have a disable option')

        self.name = name
        self.filename = filename
        self.interface_filename = interface_filename or None
        self.core_object_filename = core_object_filename or None
        self.optional = optional
        self.optional_module_dependee = optional_module_dependee
        self.disable_option = disable_option

    @property
    def has_separate_interface_file(self):
        return self.interface_filename is not None

    @classmethod
    def from_map(cls, mapping):
        """
        Build a spec from a package manifest entry.
        """
        return cls(
            name=mapping['name'],
            filename=mapping.get('filename', f'{mapping["name"]}.ko'),
            interface_filename=mapping.get('interface'),
            core_object_filename=mapping.get('core-object'),
            optional=mapping.get('optional', False),
            optional_module_dependee=mapping.get('dependee'),
            disable_option=mapping.get('disable-option'),
        )

    def __repr__(self):
        return f'{self.__class__.__qualname__}({self.name!r}, {self.filename!r})'


class KernelModuleSet(Loggable, Sequence):
    """
    Ordered set of :class:`KernelModuleSpec`.

    The order is the dependency order: modules are loaded front to back and
    unloaded back to front.

    :param specs: Kernel module specs.
    :type specs: list(KernelModuleSpec)
    """
    def __init__(self, specs):
        self._specs = list(specs)
        names = [spec.name for spec in self._specs]
        if len(set(names)) != len(names):
            raise ValueError(f'Duplicated kernel module names: {", ".join(names)}')

        self.excluded = []
        """
        Names of the modules removed from the set. That list is threaded into
        the build commands so they skip these modules.
        """

    def __getitem__(self, idx):
        return self._specs[idx]

    def __len__(self):
        return len(self._specs)

    def get(self, name):
        """
        Get the spec of the module with the given name, or ``None``.
        """
        for spec in self._specs:
            if spec.name == name:
                return spec
        return None

    def remove(self, name):
        """
        Remove a module from the set and exclude it from subsequent builds.

        :raises KeyError: If there is no module with that name.
        """
        spec = self.get(name)
        if spec is None:
            raise KeyError(f'No kernel module named "{name}"')

        self._specs.remove(spec)
        self.excluded.append(name)
        self.logger.debug(f'Kernel module "{name}" removed, excluded modules: {", ".join(self.excluded)}')
        return spec

    @property
    def names(self):
        return [spec.name for spec in self._specs]

    @property
    def filenames(self):
        """
        Names of the module files, in dependency order.
        """
        return [spec.filename for spec in self._specs]

    def load_order(self):
        return list(self._specs)

    def unload_order(self):
        return list(reversed(self._specs))


class Package:
    """
    Driver package.

    :param name: Name of the package, used to build the distribution
        precompiled interfaces path.
    :type name: str

    :param version: Driver version. Precompiled bundles must declare that
        exact version to be used.
    :type version: str

    :param description: Human readable description.
    :type description: str

    :param modules: Kernel modules of the package.
    :type modules: KernelModuleSet

    :param build_directory: Directory containing the kernel module sources
        of the selected module type.
    :type build_directory: str

    :param precompiled_directory: Directory of the precompiled bundles
        shipped with the package.
    :type precompiled_directory: str or None

    :param conflicting_modules: Kernel modules that must not be loaded while
        installing, in an order that allows unloading them one at a time.
    :type conflicting_modules: list(str)
    """
    def __init__(self, name, version, description, modules, build_directory, precompiled_directory=None, conflicting_modules=()):
        self.name = name
        self.version = version
        self.description = description
        self.modules = modules
        self.build_directory = build_directory
        self.precompiled_directory = precompiled_directory
        self.conflicting_modules = list(conflicting_modules)

    def module_path(self, spec, directory=None):
        """
        Path of the built module file of ``spec``.
        """
        directory = self.build_directory if directory is None else directory
        return os.path.join(directory, spec.filename)

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
