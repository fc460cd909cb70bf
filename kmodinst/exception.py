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

from kmodinst.utils import pretty_cmd


class KmodInstError(Exception):
    """Base class for all kmodinst errors."""
    @property
    def message(self):
        if self.args:
            return self.args[0]
        return str(self)


class ConfigurationError(KmodInstError):
    """
    Invalid or missing path, tool or key. The message always names the
    missing resource.
    """
    pass


class KernelSourceError(ConfigurationError):
    """
    The kernel source or output tree could not be located or is not usable.
    """
    pass


class ModuleTypeError(ConfigurationError):
    """
    No kernel module type is usable with the package and the detected hardware.
    """
    pass


class OperatorAbort(KmodInstError):
    """
    The operator chose to abort at an explicit choice.
    """
    pass


class ToolchainError(KmodInstError):
    """
    An external tool exited with a nonzero status.

    :param msg: Plain language explanation.
    :type msg: str

    :param cmd: Command that was executed.
    :type cmd: list(str) or str or None

    :param status: Exit status of the command.
    :type status: int or None

    :param output: Captured stdout and stderr of the command.
    :type output: str or None
    """
    def __init__(self, msg, cmd=None, status=None, output=None):
        super().__init__(msg)
        self.cmd = cmd
        self.status = status
        self.output = output

    def __str__(self):
        msg = self.message
        if self.cmd is not None:
            msg += f' (command "{pretty_cmd(self.cmd)}" exited with status {self.status})'
        return msg


class SanityCheckError(ToolchainError):
    """
    A feature test reported an incompatibility. The message is the feature
    test's own diagnostic.
    """
    pass


class BuildError(KmodInstError):
    """
    The build pipeline failed.

    :param outcome: Outcome of the failed run, with the accumulated build log.
    :type outcome: kmodinst.build.BuildOutcome or None
    """
    def __init__(self, msg, outcome=None):
        super().__init__(msg)
        self.outcome = outcome


class SigningError(KmodInstError):
    """
    A kernel module could not be signed, linked or have its signature
    detached.
    """
    pass


class IntegrityError(KmodInstError):
    """
    A detached signature could not be attached and the operator refused to
    install the module unsigned.
    """
    pass


class LoadError(KmodInstError):
    """
    A kernel module could not be loaded in the running kernel.

    :param module: Name of the module that failed to load.
    :type module: str

    :param errno: Error code returned by the kernel.
    :type errno: int or None
    """
    def __init__(self, msg, module=None, errno=None):
        super().__init__(msg)
        self.module = module
        self.errno = errno


class BundleFormatError(ValueError):
    """
    A file is not a valid precompiled bundle.
    """
    pass

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
