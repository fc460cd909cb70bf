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
Execution of the external toolchain: feature tests, ``make``, the linker.

All the commands go through :meth:`ToolchainRunner.run`, which never raises
for a nonzero exit status: the caller gets a :class:`CommandResult` and
decides whether this is fatal.
"""

import os
import os.path
import re
import subprocess
from collections import namedtuple

from kmodinst.utils import Loggable, pretty_cmd


CommandResult = namedtuple('CommandResult', ['status', 'output'])
CommandResult.__doc__ = """
Result of an external command.

:param status: Exit status. ``127`` is used when the command could not be
    executed at all.
:type status: int

:param output: Combined stdout and stderr, without the trailing newline.
:type output: str
"""

FEATURE_TEST_SCRIPT = 'conftest.sh'
"""
Name of the feature test driver script shipped in the module build directory.
"""

COUNT_TARGET = 'print-build-counts'
"""
Make target printing ``objects=N modules=N links=N`` for the progress
estimation.
"""

DEFAULT_PROGRESS = [(100, 'CC'), (10, 'LD')]
"""
Progress estimation used when the counting pass fails.
"""


class _ProgressTracker:
    """
    Turn command output lines into progress updates.

    :param steps: Ordered list of ``(expected_count, line_prefix)``.
    :type steps: list(tuple(int, str))
    """
    def __init__(self, steps, ui):
        self.steps = [
            (count, prefix)
            for count, prefix in steps
            if count > 0
        ]
        self.total = sum(count for count, _ in self.steps)
        self.ui = ui
        self._step = 0
        self._step_done = 0
        self._done = 0

    def update(self, line):
        if self._step >= len(self.steps):
            return

        count, prefix = self.steps[self._step]
        if line.strip().startswith(prefix):
            self._step_done += 1
            self._done += 1
            if self._step_done >= count:
                self._step += 1
                self._step_done = 0
            self.ui.status_update(min(1, self._done / self.total))


class ToolchainRunner(Loggable):
    """
    Run the external tools against a given kernel tree.

    :param kernel_info: Kernel the modules are built for.
    :type kernel_info: kmodinst.kernel.KernelInfo

    :param source_path: Kernel source tree.
    :type source_path: str

    :param output_path: Kernel output tree.
    :type output_path: str

    :param ui: Operator interface, used for progress reporting.
    :type ui: kmodinst.ui.UserInterface

    :param cc: Compiler. Defaults to the ``CC`` environment variable, or
        ``cc``.
    :type cc: str or None

    :param concurrency: Number of ``make`` jobs. Defaults to the number of
        CPUs.
    :type concurrency: int or None

    :param excluded_modules: List of module names excluded from the build.
        The list is not copied, so modules removed later on are excluded
        from the following invocations.
    :type excluded_modules: list(str) or None

    :param make_vars: Extra variables passed to every ``make`` invocation.
    :type make_vars: dict(str, str) or None

    :param env: Environment of the executed commands. Defaults to
        :data:`os.environ`.
    :type env: collections.abc.Mapping or None
    """
    def __init__(self, kernel_info, source_path, output_path, ui, cc=None, concurrency=None, excluded_modules=None, make_vars=None, env=None):
        env = dict(os.environ if env is None else env)

        self.kernel_info = kernel_info
        self.source_path = source_path
        self.output_path = output_path
        self.ui = ui
        self.env = env
        self.cc = cc or env.get('CC') or 'cc'
        self.ld = env.get('LD') or 'ld'
        self.concurrency = concurrency or os.cpu_count() or 1
        self.excluded_modules = [] if excluded_modules is None else excluded_modules
        self.make_vars = dict(make_vars or {})
        self.build_log = []
        """
        List of the outputs of all the build commands, with the command
        line.
        """

    @property
    def build_log_text(self):
        """
        Accumulated build log, as a single string.
        """
        return '\n'.join(self.build_log)

    def record(self, cmd, res):
        """
        Append the outcome of a command to :attr:`build_log`.
        """
        self.build_log.append(f'$ {pretty_cmd(cmd)}\n{res.output}\n[exit status {res.status}]')

    def run(self, cmd, cwd=None, progress=None):
        """
        Run a command and capture its output.

        :param cmd: Command to run.
        :type cmd: list(str)

        :param cwd: Working directory.
        :type cwd: str or None

        :param progress: Progress estimation, as returned by
            :meth:`estimate_progress`.
        :type progress: list(tuple(int, str)) or None

        :returns: A :class:`CommandResult`.
        """
        logger = self.logger
        logger.debug(f'Running: {pretty_cmd(cmd)}')
        tracker = _ProgressTracker(progress, self.ui) if progress else None

        try:
            proc = subprocess.Popen(
                cmd,
                cwd=cwd,
                env=self.env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                universal_newlines=True,
                errors='replace',
            )
        except OSError as e:
            msg = f'Failure executing command "{pretty_cmd(cmd)}": {e}'
            logger.debug(msg)
            return CommandResult(127, msg)

        lines = []
        with proc:
            for line in proc.stdout:
                lines.append(line)
                logger.debug(line.rstrip('\n'))
                if tracker:
                    tracker.update(line)
            status = proc.wait()

        output = ''.join(lines)
        if output.endswith('\n'):
            output = output[:-1]

        logger.debug(f'Command exited with status {status}: {pretty_cmd(cmd)}')
        return CommandResult(status, output)

    def feature_test_cmd(self, build_dir, test, *args):
        script = os.path.join(build_dir, FEATURE_TEST_SCRIPT)
        return [
            'sh', script,
            self.cc, self.kernel_info.machine,
            self.source_path, self.output_path,
            test, *args,
        ]

    def feature_test(self, build_dir, test, *args):
        """
        Run one of the feature tests of the ``conftest.sh`` script and append
        its output to :attr:`build_log`.

        :param build_dir: Directory containing the script.
        :type build_dir: str

        :param test: Name of the test.
        :type test: str

        :Variable positional arguments: Extra arguments of the test.

        :returns: A tuple ``(cmd, res)`` of the command and its
            :class:`CommandResult`.
        """
        cmd = self.feature_test_cmd(build_dir, test, *args)
        res = self.run(cmd, cwd=build_dir)
        self.record(cmd, res)
        return (cmd, res)

    def run_feature_test(self, build_dir, test, *args):
        """
        Same as :meth:`feature_test`.

        :returns: A tuple ``(passed, message)`` where ``message`` is the
            script's own output.
        """
        _, res = self.feature_test(build_dir, test, *args)
        return (res.status == 0, res.output)

    def make_cmd(self, build_dir, targets, make_vars=None):
        make_vars = {
            'SYSSRC': self.source_path,
            'SYSOUT': self.output_path,
            'CC': self.cc,
            'EXCLUDE_KERNEL_MODULES': ' '.join(self.excluded_modules) or None,
            **self.make_vars,
            **(make_vars or {}),
        }

        formatted_vars = [
            f'{name}={val}'
            for name, val in sorted(make_vars.items())
            if val is not None
        ]

        return ['make', f'-j{self.concurrency}', '-C', build_dir, '--', *formatted_vars, *targets]

    def run_build(self, build_dir, targets, make_vars=None, status=None, progress=None):
        """
        Run ``make`` in the module build directory.

        :param build_dir: Module build directory.
        :type build_dir: str

        :param targets: Make targets.
        :type targets: list(str)

        :param make_vars: Extra make variables for that invocation.
        :type make_vars: dict(str, str) or None

        :param status: Label of the progress indicator. If ``None``, no
            progress is reported.
        :type status: str or None

        :param progress: Progress estimation, see :meth:`estimate_progress`.
        :type progress: list(tuple(int, str)) or None

        The output is appended to :attr:`build_log` whatever the outcome.
        """
        cmd = self.make_cmd(build_dir, targets, make_vars=make_vars)

        if status:
            self.ui.status_begin(status)

        res = self.run(cmd, cwd=build_dir, progress=progress if status else None)
        self.record(cmd, res)

        if status:
            self.ui.status_end('done.' if res.status == 0 else 'failed.')

        return res

    def link(self, build_dir, output, inputs):
        """
        Link relocatable objects into ``output`` with ``ld -r``.
        """
        cmd = [self.ld, '-r', '-o', output, *inputs]
        res = self.run(cmd, cwd=build_dir)
        self.record(cmd, res)
        return res

    def estimate_progress(self, build_dir):
        """
        Estimate the build output, to drive a progress indicator.

        :returns: A list of ``(expected_line_count, line_prefix)``. If the
            counting pass fails, :data:`DEFAULT_PROGRESS` is returned.
        """
        cmd = self.make_cmd(build_dir, [COUNT_TARGET])
        res = self.run(cmd, cwd=build_dir)
        self.record(cmd, res)
        counts = {
            name: int(val)
            for name, val in re.findall(r'(objects|modules|links)=(\d+)', res.output)
        }

        if res.status or 'objects' not in counts:
            self.logger.debug(f'Could not estimate the build progress, using defaults: {res.output}')
            return list(DEFAULT_PROGRESS)
        else:
            return [
                (counts['objects'], 'CC'),
                (counts.get('modules', 0) + counts.get('links', 0), 'LD'),
            ]

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
