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
Load test of freshly built kernel modules.

Before installing, the modules are inserted in the running kernel and removed
right away. This catches modules built against the wrong kernel tree, and
modules the kernel refuses to load because of module signature enforcement.
"""

import contextlib
import enum
import errno
import os
import os.path

from elftools.elf.elffile import ELFFile

from kmodinst._insmod import UNKNOWN_ERRNO, select_inserter
from kmodinst.exception import LoadError, OperatorAbort
from kmodinst.signing import is_signed
from kmodinst.utils import Loggable, read_text_file

KERN_CRIT = 2
"""
Console log level used during the load test, so that the messages of the
tested module do not flood the console.
"""


def loaded_modules(proc_mount_point='/proc'):
    """
    Names of the kernel modules currently loaded.
    """
    content = read_text_file(os.path.join(proc_mount_point, 'modules'), default='')
    return {
        line.split()[0]
        for line in content.splitlines()
        if line.strip()
    }


def module_depends(path):
    """
    Modules declared as dependencies in the ``.modinfo`` section of the kernel
    module at ``path``.
    """
    with open(path, 'rb') as f:
        elf = ELFFile(f)
        section = elf.get_section_by_name('.modinfo')
        if section is None:
            return []
        data = section.data()

    for entry in data.split(b'\0'):
        key, sep, val = entry.partition(b'=')
        if sep and key == b'depends':
            return [
                name
                for name in val.decode('utf-8', errors='replace').split(',')
                if name
            ]
    return []


@contextlib.contextmanager
def console_loglevel(level, path='/proc/sys/kernel/printk'):
    """
    Context manager setting the kernel console log level, and restoring the
    previous one on exit whatever happens.
    """
    logger = LoadTester.get_logger('printk')
    try:
        old = read_text_file(path).split()[0]
    except (OSError, IndexError) as e:
        logger.debug(f'Cannot read the console log level from {path}: {e}')
        old = None

    def write(val):
        try:
            with open(path, 'w') as f:
                f.write(f'{val}\n')
        except OSError as e:
            logger.debug(f'Cannot set the console log level to {val}: {e}')

    if old is not None:
        write(level)
    try:
        yield
    finally:
        if old is not None:
            write(old)


class _Attempt(enum.Enum):
    SUCCESS = 'success'
    DEGRADED = 'degraded'
    ALREADY_LOADED = 'already-loaded'


class LoadTester(Loggable):
    """
    Insert and remove the built kernel modules to check the kernel accepts
    them.

    :param kernel_info: Kernel the modules were built for.
    :type kernel_info: kmodinst.kernel.KernelInfo

    :param runner: Used to run ``udevadm``, ``modprobe`` and ``dmesg``.
    :type runner: kmodinst.toolchain.ToolchainRunner

    :param ui: Operator interface.
    :type ui: kmodinst.ui.UserInterface

    :param inserter: Module insertion backend. Defaults to
        :func:`kmodinst._insmod.select_inserter`.
    :type inserter: kmodinst._insmod.ModuleInserter or None

    :param dependencies: Modules to load before the tested ones.
    :type dependencies: list(str)

    :param params: Module parameters, per module name.
    :type params: dict(str, str) or None

    :param pause_udev: Allow pausing the udev event queue when udev races
        with the test.
    :type pause_udev: bool

    :param warnings_path: Directory where the modules register warnings for
        the operator.
    :type warnings_path: str or None

    :param dmesg_lines: Number of lines of the kernel log shown after the
        test.
    :type dmesg_lines: int

    :param secure_boot: ``True`` if UEFI secure boot is enabled.
    :type secure_boot: bool

    :param kernel_config: Configuration of the running kernel.
    :type kernel_config: devlib.target.TypedKernelConfig or None

    :param proc_mount_point: Mount point of procfs.
    :type proc_mount_point: str
    """
    def __init__(self, kernel_info, runner, ui, inserter=None, dependencies=(), params=None, pause_udev=True, warnings_path=None, dmesg_lines=25, secure_boot=False, kernel_config=None, proc_mount_point='/proc'):
        self.kernel_info = kernel_info
        self.runner = runner
        self.ui = ui
        self.inserter = inserter or select_inserter()
        self.dependencies = list(dependencies)
        self.params = dict(params or {})
        self.pause_udev = pause_udev
        self.warnings_path = warnings_path
        self.dmesg_lines = dmesg_lines
        self.secure_boot = secure_boot
        self.kernel_config = kernel_config
        self.proc_mount_point = proc_mount_point
        self.skip_load_tests = False
        """
        Set when the operator accepted a module the kernel does not trust, so
        that it is not load tested again.
        """

    @property
    def sig_force(self):
        """
        ``True`` if the kernel refuses unsigned modules.
        """
        config = self.kernel_config
        return config is not None and config.is_enabled('MODULE_SIG_FORCE')

    def _udevadm(self, action):
        res = self.runner.run(['udevadm', 'control', f'--{action}-exec-queue'])
        if res.status:
            self.logger.debug(f'Could not {action} the udev event queue: {res.output}')
        return res.status == 0

    def _load_dependencies(self):
        """
        Load the dependencies that are not already loaded.

        :returns: The list of modules loaded by this function.
        """
        already_loaded = loaded_modules(self.proc_mount_point)
        loaded = []
        for name in self.dependencies:
            if name in already_loaded:
                self.logger.debug(f'Dependency {name} already loaded')
                continue

            res = self.runner.run(['modprobe', name])
            if res.status:
                self.ui.log(f'Unable to load the dependency {name}: {res.output}')
            else:
                loaded.append(name)
        return loaded

    def _unload(self, names):
        for name in names:
            err = self.inserter.remove(name)
            if err and err != errno.ENOENT:
                self.logger.debug(f'Unable to unload {name}: {os.strerror(err)}')

    def _show_warnings(self):
        path = self.warnings_path
        if not path:
            return

        try:
            entries = sorted(os.listdir(path))
        except OSError:
            return

        for entry in entries:
            if entry == 'README':
                continue
            msg = read_text_file(os.path.join(path, entry), default='').strip()
            if msg:
                self.ui.warn(msg)

    def _dump_dmesg(self):
        res = self.runner.run(['dmesg'])
        if res.status:
            self.logger.debug(f'Unable to read the kernel log: {res.output}')
        else:
            tail = res.output.splitlines()[-self.dmesg_lines:]
            self.ui.log('Kernel messages:\n' + '\n'.join(tail))

    def _insert(self, spec, module_dir):
        path = os.path.join(module_dir, spec.filename)
        try:
            return self.inserter.insert(path, self.params.get(spec.name, ''))
        except OSError as e:
            self.logger.debug(f'Unable to insert {path}: {e}')
            return e.errno or UNKNOWN_ERRNO

    def classify_load_failure(self, spec, path, err):
        """
        Explain a failed insertion and decide whether it can be ignored.

        :returns: ``True`` if the operator chose to install the module anyway.
            In that case :attr:`skip_load_tests` is set.

        :raises kmodinst.exception.LoadError: if the failure is fatal.
        :raises kmodinst.exception.OperatorAbort: if the operator chose to
            abort.
        """
        reason = os.strerror(err)

        if err == errno.ENOKEY:
            cause = f'The kernel module {spec.filename} failed to load, because it was not signed by a key that is trusted by the kernel.'
        elif self.secure_boot:
            cause = f'The kernel module {spec.filename} failed to load ({reason}). Secure boot is enabled on this system, so this is likely because it was not signed by a key that is trusted by the kernel.'
        elif self.sig_force:
            cause = f'The kernel module {spec.filename} failed to load ({reason}). The kernel is configured to refuse unsigned modules (CONFIG_MODULE_SIG_FORCE), so this is likely because it was not signed by a key that is trusted by the kernel.'
        else:
            msg = f'Unable to load the kernel module {spec.filename}: {reason}. This is most likely because the kernel module was built using the wrong kernel source files. Please check the kernel log messages for details.'
            self.ui.error(msg)
            raise LoadError(msg, module=spec.name, errno=err)

        if is_signed(path):
            self.ui.warn(f'{cause} Please make sure the key used to sign the module is enrolled in the kernel trusted keyring.')
            choice = self.ui.multiple_choice(
                f'The signed kernel module {spec.filename} is not trusted by the kernel. Install it anyway?',
                ['Install signed kernel module', 'Abort installation'],
                1,
            )
            if choice == 0:
                self.ui.warn(f'Installing the signed kernel module {spec.filename} despite the load failure, as requested by the operator')
                self.skip_load_tests = True
                return True
            else:
                raise OperatorAbort(cause)
        else:
            msg = f'{cause} Please set the "signing/secret-key" and "signing/public-key" configuration keys to sign the kernel modules with a key trusted by the kernel, or disable module signature enforcement.'
            self.ui.error(msg)
            raise LoadError(msg, module=spec.name, errno=err)

    def _attempt(self, modules, module_dir, pause_queue):
        ui = self.ui
        paused = False
        deps = []
        outcome = _Attempt.SUCCESS
        try:
            if pause_queue and self.pause_udev:
                paused = self._udevadm('stop')

            deps = self._load_dependencies()

            # A previous run may have left a module behind
            self._unload(spec.name for spec in modules.unload_order())

            for spec in modules.load_order():
                if self.skip_load_tests:
                    break

                err = self._insert(spec, module_dir)
                if not err:
                    ui.log(f'Kernel module {spec.filename} loaded')
                    continue
                elif err == errno.EEXIST:
                    ui.log(f'Kernel module {spec.name} is already loaded')
                    outcome = _Attempt.ALREADY_LOADED
                    break

                path = os.path.join(module_dir, spec.filename)
                try:
                    self.classify_load_failure(spec, path, err)
                except LoadError:
                    if spec.optional:
                        ui.warn(f'The optional {spec.name} kernel module failed to load, it will not be installed. Set the "{spec.disable_option}" option to install without it.')
                        modules.remove(spec.name)
                        outcome = _Attempt.DEGRADED
                    else:
                        raise
        finally:
            self._show_warnings()
            if paused:
                self._udevadm('start')
            self._unload(spec.name for spec in modules.unload_order())
            self._dump_dmesg()
            self._unload(reversed(deps))

        return outcome

    def unload_conflicting(self, names):
        """
        Unload the kernel modules that conflict with the ones being installed.

        :param names: Names of the conflicting modules, in an order that allows
            unloading them one at a time.
        :type names: list(str)

        :raises kmodinst.exception.LoadError: if one of them is still loaded
            after trying to unload it.
        """
        if not self.kernel_info.is_running:
            self.ui.log(f'Skipping the conflicting kernel modules check since the kernel {self.kernel_info.name} is not running')
            return

        for name in names:
            # /proc/modules only lists underscores
            name = name.replace('-', '_')
            if name not in loaded_modules(self.proc_mount_point):
                continue

            self.ui.log(f'Unloading the conflicting kernel module {name}')
            err = self.inserter.remove(name)
            if err and name in loaded_modules(self.proc_mount_point):
                msg = f'The kernel module {name} appears to already be loaded in your kernel and could not be unloaded ({os.strerror(err)}). This may be because it is in use, but may also happen if your kernel was configured without support for module unloading. Please stop any program using it before installing the driver. If no program uses it and your kernel supports module unloading, its usage count may be corrupted and the simplest remedy is to reboot your computer.'
                self.ui.error(msg)
                raise LoadError(msg, module=name, errno=err)

    def test(self, modules, module_dir, skip=False):
        """
        Load test the kernel modules.

        :param modules: Modules to test. Optional modules failing to load are
            removed from the set.
        :type modules: kmodinst.package.KernelModuleSet

        :param module_dir: Directory containing the built modules.
        :type module_dir: str

        :param skip: Skip the test.
        :type skip: bool

        :returns: ``True`` if the modules were tested, ``False`` if the test
            was skipped.
        :raises kmodinst.exception.LoadError: if a required module failed to
            load.
        """
        ui = self.ui
        if skip or self.skip_load_tests:
            ui.log('Skipping kernel module load test')
            return False
        elif not self.kernel_info.is_running:
            ui.log(f'Skipping kernel module load test since the kernel {self.kernel_info.name} is not running')
            return False

        printk = os.path.join(self.proc_mount_point, 'sys', 'kernel', 'printk')
        with console_loglevel(KERN_CRIT, printk):
            outcome = self._attempt(modules, module_dir, pause_queue=False)
            if outcome == _Attempt.ALREADY_LOADED:
                ui.log('Retrying the kernel module load test with the udev event queue paused')
                outcome = self._attempt(modules, module_dir, pause_queue=True)

        if outcome == _Attempt.ALREADY_LOADED:
            msg = 'The kernel modules were loaded by another process during the load test. Please make sure no other process loads them while installing.'
            ui.error(msg)
            raise LoadError(msg, errno=errno.EEXIST)

        ui.log('Kernel module load test passed')
        return True

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
