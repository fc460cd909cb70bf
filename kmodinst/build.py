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
Kernel module build pipeline.

The pipeline runs the feature tests guarding against known incompatible
setups, builds all the modules of the package, checks each of them was
actually produced and optionally packages them as precompiled artifacts.
"""

import os
import os.path
import shutil
import tempfile
from collections import namedtuple

from kmodinst.exception import BuildError, OperatorAbort, SanityCheckError
from kmodinst.kernel import memory_hotplug_policy
from kmodinst.precompiled import ArtifactKind, PrecompiledArtifact
from kmodinst.utils import Loggable


SANITY_CHECKS = (
    'cc_sanity_check',
    'cc_version_check',
    'dom0_sanity_check',
    'xen_sanity_check',
    'preempt_rt_sanity_check',
)
"""
Feature tests run before building, in order.
"""


BuildOutcome = namedtuple('BuildOutcome', ['nr_built', 'log', 'artifacts', 'module_dir'])
BuildOutcome.__doc__ = """
Outcome of :meth:`BuildPipeline.build`.

:param nr_built: Number of kernel modules built, ``0`` on failure.
:type nr_built: int

:param log: Output of all the build commands.
:type log: str

:param artifacts: Precompiled artifacts, when packaging was requested.
:type artifacts: list(kmodinst.precompiled.PrecompiledArtifact)

:param module_dir: Directory containing the built modules, or ``None`` if
    they were built in a temporary directory.
:type module_dir: str or None
"""


class BuildPipeline(Loggable):
    """
    Build the kernel modules of a package.

    :param package: Package to build.
    :type package: kmodinst.package.Package

    :param runner: Toolchain runner for the target kernel. Its exclusion list
        must be the one of ``package.modules``.
    :type runner: kmodinst.toolchain.ToolchainRunner

    :param ui: Operator interface.
    :type ui: kmodinst.ui.UserInterface

    :param signing: Signing service. Modules are signed only if it has keys
        configured.
    :type signing: kmodinst.signing.SigningService or None

    :param ignore_cc_mismatch: Answer to the CC version mismatch question.
        If ``None``, the operator is asked.
    :type ignore_cc_mismatch: bool or None

    :param hotplug_policy_path: Memory hotplug policy pseudo-file.
    :type hotplug_policy_path: str
    """
    def __init__(self, package, runner, ui, signing=None, ignore_cc_mismatch=None, hotplug_policy_path='/sys/devices/system/memory/auto_online_blocks'):
        self.package = package
        self.runner = runner
        self.ui = ui
        self.signing = signing
        self.ignore_cc_mismatch = ignore_cc_mismatch
        self.hotplug_policy_path = hotplug_policy_path

    @property
    def _signing_enabled(self):
        return self.signing is not None and self.signing.enabled

    def _fail(self, msg):
        self.ui.error(msg)
        outcome = BuildOutcome(0, self.runner.build_log_text, [], None)
        return BuildError(msg, outcome=outcome)

    def check_conflicts(self):
        """
        Check the target system for settings known to conflict with the
        driver.

        :raises kmodinst.exception.OperatorAbort: if the operator chose not to
            proceed.
        """
        kernel_info = self.runner.kernel_info
        if kernel_info.machine != 'ppc64le' or not kernel_info.is_running:
            return

        policy = memory_hotplug_policy(self.hotplug_policy_path)
        if policy is not None and policy != 'offline':
            msg = f'The memory hotplug policy of this system is "{policy}" ({self.hotplug_policy_path}). The driver requires hot-plugged memory blocks to stay offline until the driver onlines them, otherwise the GPU memory may be used by the kernel.'
            self.ui.warn(msg)
            if not self.ui.yes_no('Continue the installation anyway?', False):
                raise OperatorAbort(msg)

    def _check_cc_version(self, build_dir):
        """
        Check that the compiler matches the one the kernel was built with.

        :returns: Make variables to add to all the subsequent builds.
        """
        ui = self.ui
        ignore = {'IGNORE_CC_MISMATCH': '1'}

        if not self.runner.kernel_info.is_running:
            ui.log('Skipping the CC version check since the target kernel is not the running one')
            return ignore

        ui.log(f'Performing CC version check with CC="{self.runner.cc}"')
        cmd, res = self.runner.feature_test(build_dir, 'cc_version_check', 'just_msg')
        if res.status == 0:
            return {}

        msg = res.output

        if self.ignore_cc_mismatch is None:
            proceed = ui.yes_no(f'The CC version check failed:\n\n{msg}\n\nIf you know what you are doing and want to ignore the CC version check, answer "yes" to continue the installation. Otherwise, set the CC environment variable to the name of the compiler used to compile your kernel and restart the installation. Ignore the CC version mismatch?', False)
        else:
            proceed = self.ignore_cc_mismatch
            ui.log(f'CC version mismatch {"ignored" if proceed else "not ignored"} as configured by "build/ignore-cc-mismatch"')

        if proceed:
            ui.warn(f'Ignoring CC version mismatch: {msg}')
            return ignore
        else:
            ui.error(msg)
            raise SanityCheckError(msg, cmd=cmd, status=res.status, output=res.output)

    def sanity_checks(self, build_dir):
        """
        Run the feature tests of :data:`SANITY_CHECKS`.

        :raises kmodinst.exception.SanityCheckError: with the message of the
            first failing test.
        """
        for test in SANITY_CHECKS:
            if test == 'cc_version_check':
                self.runner.make_vars.update(self._check_cc_version(build_dir))
            else:
                self.ui.log(f'Performing {test}')
                cmd, res = self.runner.feature_test(build_dir, test, 'just_msg')
                if res.status:
                    self.ui.error(res.output)
                    raise SanityCheckError(res.output, cmd=cmd, status=res.status, output=res.output)

    @staticmethod
    def _exists(build_dir, filename):
        return os.path.isfile(os.path.join(build_dir, filename))

    def _verify_modules(self, build_dir):
        """
        Check each module was built, rebuilding it alone if not.

        :returns: ``True`` if any module had to be rebuilt or was dropped.
        """
        ui = self.ui
        modules = self.package.modules
        retried = False

        for spec in list(modules):
            if self._exists(build_dir, spec.filename):
                continue

            retried = True
            ui.log(f'The kernel module {spec.filename} was not built, rebuilding the {spec.name} kernel module alone')
            self.runner.run_build(build_dir, ['modules'], make_vars={'KERNEL_MODULES': spec.name})
            if self._exists(build_dir, spec.filename):
                continue

            if spec.optional:
                dependee = spec.optional_module_dependee or spec.name
                ui.warn(f'The {spec.name} kernel module failed to build. This kernel module is required for the proper operation of {dependee}. If you do not need {dependee}, you can try to install without this kernel module by setting the "{spec.disable_option}" option.')
                modules.remove(spec.name)
            else:
                raise self._fail(f'The {spec.name} kernel module failed to build: {spec.filename} was not created. Please see the build log for details.')

        return retried

    def _package_module(self, build_dir, spec):
        """
        Create the precompiled artifact of one module.
        """
        runner = self.runner

        if spec.has_separate_interface_file:
            res = runner.run_build(build_dir, [spec.interface_filename])
            if res.status or not self._exists(build_dir, spec.interface_filename):
                raise self._fail(f'Unable to build the kernel interface {spec.interface_filename} of the {spec.name} kernel module')

            with open(os.path.join(build_dir, spec.interface_filename), 'rb') as f:
                payload = f.read()

            artifact = PrecompiledArtifact(
                kind=ArtifactKind.INTERFACE,
                name=spec.interface_filename,
                payload=payload,
                core_object_name=spec.core_object_filename,
            )
            if self._signing_enabled:
                self.signing.link_and_detach_signature(build_dir, artifact, spec.filename)
        else:
            if self._signing_enabled:
                self.signing.sign(build_dir, spec.filename)

            with open(os.path.join(build_dir, spec.filename), 'rb') as f:
                payload = f.read()

            artifact = PrecompiledArtifact(
                kind=ArtifactKind.MODULE,
                name=spec.filename,
                payload=payload,
                embedded_signature=self._signing_enabled,
            )

        self.logger.debug(f'Packaged {artifact}')
        return artifact

    def _build(self, build_dir, package_interfaces):
        ui = self.ui
        runner = self.runner
        modules = self.package.modules

        self.sanity_checks(build_dir)

        ui.log('Cleaning kernel module build directory.')
        runner.run_build(build_dir, ['clean'])

        progress = runner.estimate_progress(build_dir)
        res = runner.run_build(build_dir, ['modules'], status='Building kernel modules', progress=progress)
        status = res.status

        if self._verify_modules(build_dir):
            # Aggregate status of the modules left after the rebuilds and
            # removals
            status = runner.run_build(build_dir, ['modules']).status

        if status:
            raise self._fail(f'An error occurred while building the kernel modules (exit status {status}). Please see the build log for details.')

        if not modules:
            raise self._fail('No kernel module was built')

        ui.log('Kernel module compilation complete.')

        if package_interfaces:
            artifacts = [
                self._package_module(build_dir, spec)
                for spec in modules
            ]
        else:
            artifacts = []
            if self._signing_enabled:
                for spec in modules:
                    self.signing.sign(build_dir, spec.filename)

        return BuildOutcome(
            nr_built=len(modules),
            log=runner.build_log_text,
            artifacts=artifacts,
            module_dir=None if package_interfaces else build_dir,
        )

    def build(self, package_interfaces=False):
        """
        Run the whole pipeline.

        :param package_interfaces: If ``True``, build in a temporary copy of
            the sources and package the result as precompiled artifacts.
        :type package_interfaces: bool

        :returns: A :class:`BuildOutcome`.
        :raises kmodinst.exception.BuildError: if a required kernel module
            could not be built.
        """
        self.check_conflicts()

        stage = None
        try:
            if package_interfaces:
                stage = tempfile.mkdtemp(prefix='kmodinst-build-')
                build_dir = os.path.join(stage, os.path.basename(self.package.build_directory.rstrip('/')))
                self.ui.log(f'Copying kernel module sources to temporary directory {build_dir}')
                shutil.copytree(self.package.build_directory, build_dir, symlinks=True)
            else:
                build_dir = self.package.build_directory

            return self._build(build_dir, package_interfaces)
        finally:
            if stage:
                try:
                    shutil.rmtree(stage)
                except OSError as e:
                    self.logger.warning(f'Could not remove temporary build directory {stage}: {e}')

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
