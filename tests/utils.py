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

from unittest import TestCase
import errno
import os
import os.path
import shutil
import stat
import tempfile

from kmodinst._insmod import ModuleInserter
from kmodinst.kernel import KernelInfo
from kmodinst.package import KernelModuleSet, KernelModuleSpec, Package
from kmodinst.signing import MODULE_SIGNATURE_MARKER, SIGN_FILE
from kmodinst.toolchain import COUNT_TARGET, FEATURE_TEST_SCRIPT, CommandResult, ToolchainRunner
from kmodinst.ui import UserInterface


KERNEL_NAME = '6.1.0-kmodinst-test'
PROC_VERSION = f'Linux version {KERNEL_NAME} (builder@localhost) (gcc 12.2.0) #1 SMP PREEMPT_DYNAMIC'

SIGNATURE = b'test signature' + MODULE_SIGNATURE_MARKER


def running_kernel(machine='x86_64', proc_version=PROC_VERSION):
    """
    :returns: A :class:`kmodinst.kernel.KernelInfo` for a kernel that is
        running.
    """
    return KernelInfo(
        name=KERNEL_NAME,
        running_release=KERNEL_NAME,
        machine=machine,
        proc_version=proc_version,
    )


def foreign_kernel():
    """
    :returns: A :class:`kmodinst.kernel.KernelInfo` for a kernel that is not
        the running one.
    """
    return KernelInfo(
        name='5.15.0-other',
        running_release=KERNEL_NAME,
        machine='x86_64',
        proc_version=PROC_VERSION,
    )


def write_file(path, content=b''):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    mode = 'wb' if isinstance(content, bytes) else 'w'
    with open(path, mode) as f:
        f.write(content)
    return path


def read_file(path):
    with open(path, 'rb') as f:
        return f.read()


def make_executable(path):
    os.chmod(path, os.stat(path).st_mode | stat.S_IXUSR)
    return path


def make_kernel_tree(path, configured=True, sign_file=True):
    """
    Create a minimal kernel tree that passes the source path validation.
    """
    write_file(os.path.join(path, 'include', 'linux', 'kernel.h'), '')
    if configured:
        write_file(os.path.join(path, 'include', 'generated', 'uapi', 'linux', 'version.h'), '')
    if sign_file:
        make_executable(write_file(os.path.join(path, 'scripts', SIGN_FILE), '#! /bin/sh\n'))
    return path


def make_build_dir(path, core_objects=()):
    """
    Create a kernel module build directory, with the feature test script and
    the kernel-independent core objects.
    """
    write_file(os.path.join(path, FEATURE_TEST_SCRIPT), '#! /bin/sh\n')
    for name in core_objects:
        write_file(os.path.join(path, name), f'core object {name}'.encode())
    return path


def core_spec():
    return KernelModuleSpec('core', 'core.ko')


def linked_core_spec():
    return KernelModuleSpec(
        'core', 'core.ko',
        interface_filename='core-interface.o',
        core_object_filename='core-kernel.o',
    )


def optional_spec(name='uvm'):
    return KernelModuleSpec(
        name, f'{name}.ko',
        optional=True,
        optional_module_dependee='Unified Memory',
        disable_option=f'no-{name}-module',
    )


def make_package(build_dir, specs, version='1.0', precompiled_directory=None):
    return Package(
        name='testdriver',
        version=version,
        description='Test driver',
        modules=KernelModuleSet(specs),
        build_directory=build_dir,
        precompiled_directory=precompiled_directory,
    )


class StorageTestCase(TestCase):
    """
    A base class for tests that also provides a directory
    """
    def setUp(self):
        self.res_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.res_dir)

    def path(self, *parts):
        return os.path.join(self.res_dir, *parts)


class ScriptedUI(UserInterface):
    """
    Operator interface giving pre-recorded answers, and the default answer
    once they are exhausted.

    :param answers: Answers given in order, whatever the kind of question.
    :type answers: list
    """
    def __init__(self, answers=(), expert=False):
        super().__init__(expert=expert)
        self.answers = list(answers)
        self.questions = []
        self.messages = []
        self.warnings = []
        self.errors = []

    def _answer(self, question, default):
        self.questions.append(question)
        if self.answers:
            return self.answers.pop(0)
        else:
            return default

    def _ask_yes_no(self, question, default):
        return self._answer(question, default)

    def _ask_input(self, prompt, default):
        return self._answer(prompt, default)

    def _ask_choice(self, question, choices, default):
        return self._answer(question, default)

    def message(self, msg):
        self.messages.append(msg)
        super().message(msg)

    def warn(self, msg):
        self.warnings.append(msg)
        super().warn(msg)

    def error(self, msg):
        self.errors.append(msg)
        super().error(msg)


class FakeRunner(ToolchainRunner):
    """
    :class:`kmodinst.toolchain.ToolchainRunner` that does not execute
    anything. Commands are recorded in :attr:`cmds` and passed to
    ``handler(cmd, cwd)``, which returns a
    :class:`kmodinst.toolchain.CommandResult` or ``None`` for a silent
    success.
    """
    def __init__(self, *args, handler=None, **kwargs):
        kwargs.setdefault('env', {})
        kwargs.setdefault('concurrency', 4)
        super().__init__(*args, **kwargs)
        self.handler = handler
        self.cmds = []

    def run(self, cmd, cwd=None, progress=None):
        cmd = list(cmd)
        self.cmds.append(cmd)
        res = self.handler(cmd, cwd) if self.handler else None
        return CommandResult(0, '') if res is None else res

    def cmds_of(self, tool):
        return [
            cmd
            for cmd in self.cmds
            if os.path.basename(cmd[0]) == tool
        ]


def parse_make_cmd(cmd):
    """
    :returns: A tuple ``(build_dir, targets, make_vars)``.
    """
    build_dir = cmd[cmd.index('-C') + 1]
    args = cmd[cmd.index('--') + 1:]
    make_vars = dict(
        arg.split('=', 1)
        for arg in args
        if '=' in arg
    )
    targets = [arg for arg in args if '=' not in arg]
    return (build_dir, targets, make_vars)


class FakeKbuild:
    """
    Emulate the kernel module build system, the linker and the signing
    helper.

    :param specs: Kernel modules of the package.
    :type specs: list(kmodinst.package.KernelModuleSpec)

    :param failing: Names of the modules that fail to build.
    :type failing: list(str)

    :param built_alone: Names of the failing modules that do build when
        built alone.
    :type built_alone: list(str)

    :param feature_tests: Mapping of feature test names to
        ``(status, output)``. Unlisted tests pass.
    :type feature_tests: dict

    :param modules_status: If not ``None``, exit status of every ``modules``
        build, whatever the modules actually built.
    :type modules_status: int or None
    """
    def __init__(self, specs, failing=(), built_alone=(), feature_tests=None, modules_status=None):
        self.filenames = {
            spec.name: spec.filename
            for spec in specs
        }
        self.failing = set(failing)
        self.built_alone = set(built_alone)
        self.feature_tests = dict(feature_tests or {})
        self.modules_status = modules_status
        self.make_calls = []
        """
        List of ``(build_dir, targets, make_vars)``.
        """

    def __call__(self, cmd, cwd):
        tool = os.path.basename(cmd[0])
        if tool == 'make':
            return self.make(cmd)
        elif tool == 'sh' and cmd[1].endswith(FEATURE_TEST_SCRIPT):
            status, output = self.feature_tests.get(cmd[6], (0, ''))
            return CommandResult(status, output)
        elif tool == 'ld':
            return self.link(cmd, cwd)
        elif tool == SIGN_FILE:
            with open(cmd[4], 'ab') as f:
                f.write(SIGNATURE)
            return CommandResult(0, '')
        else:
            return None

    def make(self, cmd):
        build_dir, targets, make_vars = parse_make_cmd(cmd)
        self.make_calls.append((build_dir, targets, make_vars))
        excluded = make_vars.get('EXCLUDE_KERNEL_MODULES', '').split()
        alone = make_vars.get('KERNEL_MODULES')

        status = 0
        for target in targets:
            if target == 'clean':
                for filename in self.filenames.values():
                    path = os.path.join(build_dir, filename)
                    if os.path.exists(path):
                        os.remove(path)
            elif target == COUNT_TARGET:
                return CommandResult(0, f'objects={len(self.filenames)} modules={len(self.filenames)} links=0')
            elif target == 'modules':
                for name, filename in self.filenames.items():
                    if name in excluded or (alone and name != alone):
                        continue

                    path = os.path.join(build_dir, filename)
                    if name in self.failing and not (alone and name in self.built_alone):
                        # Up to date modules are not rebuilt
                        if not os.path.exists(path):
                            status = 2
                    else:
                        write_file(path, f'module {name}'.encode())

                if self.modules_status is not None:
                    status = self.modules_status
            else:
                write_file(os.path.join(build_dir, target), f'interface {target}'.encode())

        return CommandResult(status, f'make {" ".join(targets)}')

    @staticmethod
    def link(cmd, cwd):
        output = os.path.join(cwd, cmd[3])
        data = b''.join(
            read_file(os.path.join(cwd, name))
            for name in cmd[4:]
        )
        write_file(output, b'linked:' + data)
        return CommandResult(0, '')


def linked_content(interface_payload, core_payload):
    """
    Content of the module produced by :meth:`FakeKbuild.link`.
    """
    return b'linked:' + interface_payload + core_payload


class FakeInserter(ModuleInserter):
    """
    Kernel module inserter keeping track of the loaded modules.

    :param errors: Mapping of module names to the list of error codes
        returned by successive insertions. ``0`` means success.
    :type errors: dict(str, list(int))

    :param loaded: Names of the modules loaded beforehand.
    :type loaded: list(str)

    :param busy: Names of the modules that cannot be removed.
    :type busy: list(str)
    """
    def __init__(self, errors=None, loaded=(), busy=()):
        self.errors = {
            name: list(codes)
            for name, codes in (errors or {}).items()
        }
        self.loaded = set(loaded)
        self.busy = set(busy)
        self.calls = []

    def insert(self, path, params=''):
        name = os.path.basename(path)[:-len('.ko')]
        self.calls.append(('insert', name, params))
        codes = self.errors.get(name)
        err = codes.pop(0) if codes else 0
        if not err:
            self.loaded.add(name)
        return err

    def remove(self, name):
        self.calls.append(('remove', name))
        if name in self.busy:
            return errno.EBUSY
        if name in self.loaded:
            self.loaded.remove(name)
            return 0
        else:
            return errno.ENOENT

    @property
    def inserted(self):
        return [name for op, name, *_ in self.calls if op == 'insert']

    @property
    def removed(self):
        return [name for op, name, *_ in self.calls if op == 'remove']

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
