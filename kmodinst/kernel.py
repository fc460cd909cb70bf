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
Description of the kernel the modules are built for, and location of its
source and build trees.

Kernel facts are computed once in :meth:`KernelInfo.from_system` and then
passed explicitly to every component that needs them.
"""

import enum
import gzip
import os
import os.path

from devlib.target import KernelVersion, TypedKernelConfig

from kmodinst.exception import ConfigurationError, KernelSourceError
from kmodinst.utils import Loggable, read_text_file

NUM_TIMES_QUESTIONS_ASKED = 3
"""
Number of times the operator is asked for a path before giving up.
"""

SECURE_BOOT_EFIVAR = 'SecureBoot-8be4df61-93ca-11d2-aa0d-00e098032b8c'

INSTALL_YOUR_KERNEL_SOURCE = (
    'Please make sure you have installed the kernel source files for your '
    'kernel and that they are properly configured; on Red Hat Linux systems, '
    'for example, be sure you have the "kernel-source" or "kernel-devel" RPM '
    'installed. If you know the correct kernel source files are installed, '
    'you may specify the kernel source path with the "kernel/source-path" '
    'configuration key or the SYSSRC environment variable.'
)


class KernelInfo(Loggable):
    """
    Facts about the kernel modules are built for.

    :param name: Kernel release the modules are built for, as in
        ``uname -r``.
    :type name: str

    :param running_release: Release of the kernel currently running.
    :type running_release: str

    :param machine: Machine architecture, as in ``uname -m``.
    :type machine: str

    :param proc_version: First line of ``/proc/version`` of the running
        kernel. This is the signature precompiled bundles are matched
        against.
    :type proc_version: str or None
    """
    def __init__(self, name, running_release, machine, proc_version):
        self.name = name
        self.running_release = running_release
        self.machine = machine
        self.proc_version = proc_version

    @classmethod
    def from_system(cls, kernel_name=None, proc_mount_point='/proc'):
        """
        Gather the kernel information from the running system.

        :param kernel_name: Kernel release to build for. Defaults to the
            running kernel.
        :type kernel_name: str or None

        :param proc_mount_point: Mount point of procfs.
        :type proc_mount_point: str
        """
        uname = os.uname()
        proc_version = read_proc_version(proc_mount_point)
        if proc_version is None:
            cls.get_logger().warning(f'Unable to read {proc_mount_point}/version, precompiled kernel interfaces will not be matched')

        return cls(
            name=kernel_name or uname.release,
            running_release=uname.release,
            machine=uname.machine,
            proc_version=proc_version,
        )

    @property
    def is_running(self):
        """
        ``True`` if the modules are built for the running kernel, which
        allows loading them.
        """
        return self.name == self.running_release

    @property
    def version(self):
        """
        :class:`devlib.target.KernelVersion` parsed from :attr:`name`.
        """
        return KernelVersion(self.name)

    def __str__(self):
        running = '' if self.is_running else ' (not running)'
        return f'{self.name} {self.machine}{running}'


def read_proc_version(proc_mount_point='/proc'):
    """
    Return the first line of ``<proc_mount_point>/version``, or ``None`` if it
    cannot be read.
    """
    content = read_text_file(os.path.join(proc_mount_point, 'version'), default='')
    version = content.split('\n', 1)[0]
    return version or None


def convert_include_path_to_source_path(include_path):
    """
    Convert a kernel include path to the kernel source path, by trimming the
    last path component.
    """
    return os.path.dirname(include_path.rstrip('/')) or include_path


class _Answer(enum.Enum):
    VALID = 'valid'
    EMPTY = 'empty'
    MISSING = 'missing'


class PathResolver(Loggable):
    """
    Locate the kernel source tree, the kernel output tree and the module
    installation directory.

    :param kernel_info: Kernel the modules are built for.
    :type kernel_info: KernelInfo

    :param ui: Operator interface.
    :type ui: kmodinst.ui.UserInterface

    :param expert: If ``True``, the operator is given a chance to override
        the guessed paths.
    :type expert: bool

    :param env: Environment variables, to look for ``SYSSRC`` and ``SYSOUT``.
        Defaults to :data:`os.environ`.
    :type env: collections.abc.Mapping or None

    :param modules_root: Root of the installed kernel modules trees.
    :type modules_root: str

    :param usr_src: Directory where distributions install kernel sources.
    :type usr_src: str

    An explicit choice (configuration key or environment variable) is never
    replaced by a guessed one: if it turns out to be invalid, resolution
    fails.
    """
    def __init__(self, kernel_info, ui, expert=False, env=None, modules_root='/lib/modules', usr_src='/usr/src'):
        self.kernel_info = kernel_info
        self.ui = ui
        self.expert = expert
        self.env = os.environ if env is None else env
        self.modules_root = modules_root
        self.usr_src = usr_src

    def _lib_modules(self, *parts):
        return os.path.join(self.modules_root, self.kernel_info.name, *parts)

    def default_source_path(self, explicit=None, include_path=None):
        """
        Guess the kernel source path, without validating it.

        :returns: The path, or ``None`` if none of the usual locations exists.
        """
        logger = self.logger

        if explicit:
            logger.debug(f'Using the kernel source path "{explicit}" as specified by the "kernel/source-path" configuration key')
            return explicit

        if include_path:
            self.ui.warn('The "kernel/include-path" configuration key is deprecated, please use "kernel/source-path" instead')
            path = convert_include_path_to_source_path(include_path)
            logger.debug(f'Using the kernel source path "{path}" inferred from the "kernel/include-path" configuration key "{include_path}"')
            return path

        path = self.env.get('SYSSRC')
        if path:
            logger.debug(f'Using the kernel source path "{path}" as specified by the SYSSRC environment variable')
            return path

        # Not explicitly requested by the operator, so only use them if they
        # exist
        candidates = [
            self._lib_modules('source'),
            self._lib_modules('build', 'source'),
            self._lib_modules('build'),
            os.path.join(self.usr_src, f'linux-{self.kernel_info.name}'),
            os.path.join(self.usr_src, 'linux'),
        ]
        for path in candidates:
            if os.path.isdir(path):
                logger.debug(f'Using the kernel source path "{path}"')
                return path
            else:
                logger.debug(f'Kernel source path candidate does not exist: {path}')

        return None

    def _ask_path(self, prompt, default, check_exists=True):
        """
        Ask the operator for a path, at most :data:`NUM_TIMES_QUESTIONS_ASKED`
        times.

        :returns: The path, or ``None`` if no valid answer was given.
        """
        def check(answer):
            if not answer:
                return _Answer.EMPTY
            elif check_exists and not os.path.isdir(answer):
                return _Answer.MISSING
            else:
                return _Answer.VALID

        for _ in range(NUM_TIMES_QUESTIONS_ASKED):
            answer = self.ui.get_input(prompt, default)
            outcome = check(answer)
            if outcome == _Answer.VALID:
                return answer
            elif outcome == _Answer.MISSING:
                self.ui.warn(f'{prompt} "{answer}" does not exist')
            else:
                self.ui.warn(f'Invalid {prompt.lower()}')

        return None

    def resolve_source_path(self, explicit=None, include_path=None):
        """
        Find the kernel source path and check it looks like a kernel source
        tree.

        :param explicit: Path explicitly requested by the operator.
        :type explicit: str or None

        :param include_path: Deprecated way of specifying the source path, as
            the ``include/`` folder of the kernel tree.
        :type include_path: str or None

        :raises kmodinst.exception.KernelSourceError: if no usable source tree
            was found.
        """
        path = self.default_source_path(explicit=explicit, include_path=include_path)

        if self.expert:
            path = self._ask_path('Kernel source path', path)

        if not path:
            raise KernelSourceError(f'Unable to find the kernel source tree for the kernel {self.kernel_info.name}. {INSTALL_YOUR_KERNEL_SOURCE}')

        if os.path.normpath(path) == '/usr':
            raise KernelSourceError(f'The kernel source path "{path}" is invalid. {INSTALL_YOUR_KERNEL_SOURCE}')

        if not os.path.isdir(path):
            raise KernelSourceError(f'The kernel source path "{path}" does not exist. {INSTALL_YOUR_KERNEL_SOURCE}')

        header = os.path.join(path, 'include', 'linux', 'kernel.h')
        if not os.path.exists(header):
            raise KernelSourceError(f'The kernel header file "{header}" does not exist. The most likely reason for this is that the kernel source path "{path}" is incorrect. {INSTALL_YOUR_KERNEL_SOURCE}')

        return path

    def resolve_output_path(self, source_path, explicit=None):
        """
        Find the kernel output path, where the kernel build artifacts are
        stored. Unless specified, it is the same as the source path.

        :raises kmodinst.exception.KernelSourceError: if an explicitly
            specified path does not exist.
        """
        def check(path, origin):
            self.logger.debug(f'Using the kernel output path "{path}" as specified by {origin}')
            if not os.path.isdir(path):
                raise KernelSourceError(f'The kernel output path "{path}" does not exist')
            return path

        if explicit:
            return check(explicit, 'the "kernel/output-path" configuration key')

        path = self.env.get('SYSOUT')
        if path:
            return check(path, 'the SYSOUT environment variable')

        # Distributions split the tree between /lib/modules/<k>/source and
        # /lib/modules/<k>/build
        if os.path.normpath(source_path).startswith(self._lib_modules('source')):
            build = self._lib_modules('build')
            if os.path.isdir(build):
                return build

        return source_path

    def check_configured(self, output_path):
        """
        Check that the kernel tree has been configured, i.e. that the
        ``version.h`` header has been generated.

        :raises kmodinst.exception.KernelSourceError: if the tree is not
            configured.
        """
        candidates = [
            os.path.join(output_path, 'include', 'generated', 'uapi', 'linux', 'version.h'),
            os.path.join(output_path, 'include', 'linux', 'version.h'),
        ]
        if not any(map(os.path.exists, candidates)):
            raise KernelSourceError(f'The kernel header file "{candidates[-1]}" does not exist. The most likely reason for this is that the kernel source files in "{output_path}" have not been configured.')

    def resolve(self, source_path=None, output_path=None, include_path=None):
        """
        Resolve and validate both the source and output paths.

        :returns: A tuple ``(source_path, output_path)``.
        """
        source = self.resolve_source_path(explicit=source_path, include_path=include_path)
        output = self.resolve_output_path(source, explicit=output_path)
        self.check_configured(output)

        self.ui.log(f'Kernel source path: {source}')
        self.ui.log(f'Kernel output path: {output}')
        return (source, output)

    def module_installation_path(self, explicit=None):
        """
        Directory where the kernel modules get installed.

        :raises kmodinst.exception.ConfigurationError: if the operator did not
            give a usable path in expert mode.
        """
        if explicit:
            return explicit

        if os.path.isdir(self._lib_modules('kernel')):
            path = self._lib_modules('kernel', 'drivers', 'video')
        else:
            path = self._lib_modules('video')

        if self.expert:
            path = self._ask_path('Kernel module installation path', path, check_exists=False)
            if not path:
                raise ConfigurationError('Unable to determine the kernel module installation path')

        self.ui.expert(f'Kernel module installation path: {path}')
        return path


def read_kernel_config(kernel_info, output_path=None, proc_mount_point='/proc', boot_dir='/boot'):
    """
    Read the configuration of the target kernel.

    The config is looked up in the kernel output tree, then in ``/boot`` and
    finally in ``/proc/config.gz`` if the target kernel is the running one.

    :returns: A :class:`devlib.target.TypedKernelConfig`, or ``None`` if no
        config could be found.
    """
    logger = KernelInfo.get_logger('config')

    def from_file(path):
        if path.endswith('.gz'):
            with gzip.open(path, 'rt') as f:
                return f.read()
        else:
            return read_text_file(path)

    candidates = []
    if output_path:
        candidates.append(os.path.join(output_path, '.config'))
    candidates.append(os.path.join(boot_dir, f'config-{kernel_info.name}'))
    if kernel_info.is_running:
        candidates.append(os.path.join(proc_mount_point, 'config.gz'))

    for path in candidates:
        try:
            text = from_file(path)
        except OSError as e:
            logger.debug(f'Could not read kernel config {path}: {e}')
        else:
            logger.debug(f'Using kernel config: {path}')
            return TypedKernelConfig.from_str(text)

    return None


def secure_boot_enabled(efivars_dir='/sys/firmware/efi/efivars'):
    """
    ``True`` if the firmware reports that UEFI secure boot is enabled.
    """
    path = os.path.join(efivars_dir, SECURE_BOOT_EFIVAR)
    try:
        with open(path, 'rb') as f:
            data = f.read()
    except OSError:
        return False

    return bool(data) and data[-1] == 1


def memory_hotplug_policy(path='/sys/devices/system/memory/auto_online_blocks'):
    """
    Policy applied by the kernel to hot-plugged memory blocks, or ``None`` if
    the kernel does not expose it.
    """
    content = read_text_file(path, default='')
    return content.strip() or None

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
