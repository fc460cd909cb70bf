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
End to end kernel module installation flow.

:class:`KernelModuleInstaller` ties together the module type selection, the
precompiled bundle search, the build pipeline, the signing and the load test.
It consumes an :class:`InstallerConf` holding the already parsed operator
choices.
"""

import os
import os.path
from collections import namedtuple

from elftools.common.exceptions import ELFError

from kmodinst.build import BuildPipeline
from kmodinst.conf import KeyDesc, LevelKeyDesc, SimpleMultiSrcConf, TopLevelKeyDesc
from kmodinst.exception import BuildError, ConfigurationError
from kmodinst.kernel import KernelInfo, PathResolver, read_kernel_config, secure_boot_enabled
from kmodinst.loadtest import LoadTester, module_depends
from kmodinst.module_type import ModuleTypeSelector
from kmodinst.package import KernelModuleSet, KernelModuleSpec, Package
from kmodinst.precompiled import ArtifactMatcher, PrecompiledBundle
from kmodinst.signing import SigningService
from kmodinst.toolchain import ToolchainRunner
from kmodinst.ui import NonInteractiveUI
from kmodinst.utils import Loggable


class InstallerConf(SimpleMultiSrcConf):
    """
    Configuration of :class:`KernelModuleInstaller`.

    {generated_help}
    """
    STRUCTURE = TopLevelKeyDesc('installer-conf', 'Kernel module installer configuration', (
        LevelKeyDesc('kernel', 'Target kernel', (
            KeyDesc('name', 'Release of the kernel to build for, defaults to the running kernel', [str, None]),
            KeyDesc('source-path', 'Kernel source tree', [str, None]),
            KeyDesc('output-path', 'Kernel output tree, defaults to the source tree', [str, None]),
            KeyDesc('include-path', 'Deprecated, include/ folder of the kernel source tree', [str, None]),
            KeyDesc('module-installation-path', 'Directory the kernel modules are installed in', [str, None]),
            KeyDesc('proc-mount-point', 'Mount point of procfs', [str]),
        )),
        LevelKeyDesc('build', 'Kernel module build', (
            KeyDesc('cc', 'Compiler, defaults to the CC environment variable or "cc"', [str, None]),
            KeyDesc('concurrency-level', 'Number of parallel make jobs, defaults to the number of CPUs', [int, None]),
            KeyDesc('make-variables', 'Extra make variables', [dict]),
            KeyDesc('ignore-cc-mismatch', 'Answer to the CC version mismatch question. The operator is asked if unset', [bool, None]),
        )),
        LevelKeyDesc('signing', 'Kernel module signing', (
            KeyDesc('secret-key', 'Private key used to sign the kernel modules', [str, None]),
            KeyDesc('public-key', 'X.509 certificate of the signing key', [str, None]),
            KeyDesc('hash', 'Signing hash algorithm, defaults to the one the kernel is configured for', [str, None]),
            KeyDesc('sign-file', 'Path to the sign-file helper, defaults to the one of the kernel tree', [str, None]),
        )),
        LevelKeyDesc('precompiled', 'Precompiled kernel interfaces', (
            KeyDesc('search-path', 'Directory searched first for precompiled kernel interfaces', [str, None]),
            KeyDesc('skip', 'Do not search for precompiled kernel interfaces', [bool]),
            KeyDesc('package-interfaces', 'Store the built kernel interfaces in the package precompiled directory', [bool]),
        )),
        LevelKeyDesc('modules', 'Kernel modules', (
            KeyDesc('type', 'Force the kernel module type, as a type letter or directory name', [str, None]),
            KeyDesc('disabled', 'Names of the optional kernel modules not to install', [list]),
            KeyDesc('dependencies', 'Modules to load before load testing', [list]),
            KeyDesc('params', 'Module parameters for the load test, per module name', [dict]),
        )),
        LevelKeyDesc('load-test', 'Kernel module load test', (
            KeyDesc('skip', 'Do not load test the kernel modules', [bool]),
            KeyDesc('pause-udev', 'Pause the udev event queue when udev loads the modules during the test', [bool]),
            KeyDesc('warnings-path', 'Directory where the kernel modules register warnings', [str, None]),
            KeyDesc('dmesg-lines', 'Number of kernel log lines shown after the test', [int]),
        )),
        KeyDesc('expert', 'Expert mode, giving more control to the operator', [bool]),
    ))

    DEFAULT_SRC = {
        'kernel': {
            'proc-mount-point': '/proc',
        },
        'build': {
            'make-variables': {},
        },
        'precompiled': {
            'skip': False,
            'package-interfaces': False,
        },
        'modules': {
            'disabled': [],
            'dependencies': [],
            'params': {},
        },
        'load-test': {
            'skip': False,
            'pause-udev': True,
            'dmesg-lines': 25,
        },
        'expert': False,
    }

    @classmethod
    def from_env(cls, env=None, conf=None):
        """
        Build a configuration with an ``env`` source made of the ``SYSSRC``,
        ``SYSOUT`` and ``CC`` environment variables, and a ``user`` source on
        top of it.

        :param env: Environment variables. Defaults to :data:`os.environ`.
        :type env: collections.abc.Mapping or None

        :param conf: Operator choices.
        :type conf: collections.abc.Mapping or None
        """
        env = os.environ if env is None else env
        self = cls()
        self.add_src('env', {
            'kernel': {
                'source-path': env.get('SYSSRC'),
                'output-path': env.get('SYSOUT'),
            },
            'build': {
                'cc': env.get('CC'),
            },
        }, filter_none=True)

        if conf is not None:
            self.add_src('user', conf)
        return self


InstallerConf.__doc__ = InstallerConf.__doc__.format(
    generated_help=InstallerConf.get_help(),
)


InstallOutcome = namedtuple('InstallOutcome', [
    'module_type',
    'module_dir',
    'modules',
    'installation_path',
    'bundle',
    'load_tested',
])
InstallOutcome.__doc__ = """
Outcome of :meth:`KernelModuleInstaller.install`.

:param module_type: Module type that was installed.
:type module_type: kmodinst.module_type.ModuleType

:param module_dir: Directory containing the ready to install kernel modules.
:type module_dir: str

:param modules: Kernel modules to install.
:type modules: kmodinst.package.KernelModuleSet

:param installation_path: Directory the kernel modules are to be installed
    in.
:type installation_path: str

:param bundle: Precompiled bundle the modules come from, or ``None`` if they
    were built.
:type bundle: kmodinst.precompiled.PrecompiledBundle or None

:param load_tested: ``True`` if the modules passed the load test.
:type load_tested: bool
"""


class KernelModuleInstaller(Loggable):
    """
    Prepare the kernel modules of a driver package for installation.

    :param package_dir: Root of the driver package, containing one directory
        per kernel module type.
    :type package_dir: str

    :param name: Name of the package.
    :type name: str

    :param version: Driver version.
    :type version: str

    :param description: Human readable description of the package.
    :type description: str

    :param modules: Kernel modules of the package, in dependency order.
        Mappings are converted with :meth:`KernelModuleSpec.from_map`.
    :type modules: list(KernelModuleSpec or dict)

    :param conf: Installer configuration.
    :type conf: InstallerConf or None

    :param ui: Operator interface. Defaults to :class:`NonInteractiveUI`.
    :type ui: kmodinst.ui.UserInterface or None

    :param kernel_info: Kernel to install for. Defaults to the one described
        in ``conf``.
    :type kernel_info: kmodinst.kernel.KernelInfo or None

    :param gpu_compat: Compatibility of the detected GPUs with each module
        type id.
    :type gpu_compat: dict(str, bool) or None

    :param inserter: Kernel module insertion backend for the load test.
    :type inserter: kmodinst._insmod.ModuleInserter or None

    :param env: Environment variables. Defaults to :data:`os.environ`.
    :type env: collections.abc.Mapping or None

    :param conflicting_modules: Kernel modules unloaded before the load test,
        see :attr:`kmodinst.package.Package.conflicting_modules`.
    :type conflicting_modules: list(str) or None
    """
    def __init__(self, package_dir, name, version, description, modules, conf=None, ui=None, kernel_info=None, gpu_compat=None, inserter=None, env=None, conflicting_modules=None):
        self.env = os.environ if env is None else env
        self.conf = InstallerConf.from_env(self.env) if conf is None else conf
        self.ui = ui or NonInteractiveUI(expert=self.conf['expert'])
        self.package_dir = package_dir
        self.name = name
        self.version = version
        self.description = description
        self.module_specs = [
            spec if isinstance(spec, KernelModuleSpec) else KernelModuleSpec.from_map(spec)
            for spec in modules
        ]
        self.gpu_compat = gpu_compat
        self.inserter = inserter
        self.conflicting_modules = list(conflicting_modules or [])

        kernel_conf = self.conf['kernel']
        self.kernel_info = kernel_info or KernelInfo.from_system(
            kernel_name=kernel_conf.get('name'),
            proc_mount_point=kernel_conf['proc-mount-point'],
        )

    @property
    def expert(self):
        return self.conf['expert']

    @staticmethod
    def _explicit(level, key):
        """
        Value of ``key`` only if it was not inferred from the environment.
        """
        try:
            src = level.resolve_src(key)
        except KeyError:
            return None
        return None if src == 'env' else level[key]

    def select_package(self):
        """
        Select the kernel module type and apply the disabled optional modules.

        :returns: A :class:`kmodinst.package.Package` whose build directory is
            the one of the selected module type.
        """
        modules_conf = self.conf['modules']
        selector = ModuleTypeSelector(self.package_dir, self.ui)
        module_type = selector.select(
            override=modules_conf.get('type'),
            gpu_compat=self.gpu_compat,
        )

        modules = KernelModuleSet(self.module_specs)
        for name in modules_conf['disabled']:
            spec = modules.get(name)
            if spec is None:
                raise ConfigurationError(f'Cannot disable the kernel module "{name}": no such kernel module in this package')
            elif not spec.optional:
                raise ConfigurationError(f'Cannot disable the kernel module "{name}": it is not optional')
            self.ui.log(f'Not installing the {name} kernel module, as requested')
            modules.remove(name)

        build_directory = os.path.join(self.package_dir, module_type.directory)
        package = Package(
            name=self.name,
            version=self.version,
            description=self.description,
            modules=modules,
            build_directory=build_directory,
            precompiled_directory=os.path.join(build_directory, 'precompiled'),
            conflicting_modules=self.conflicting_modules,
        )
        return (module_type, package)

    def path_resolver(self):
        return PathResolver(
            kernel_info=self.kernel_info,
            ui=self.ui,
            expert=self.expert,
            env=self.env,
        )

    def make_runner(self, package, source_path=None, output_path=None):
        build_conf = self.conf['build']
        return ToolchainRunner(
            kernel_info=self.kernel_info,
            source_path=source_path,
            output_path=output_path,
            ui=self.ui,
            cc=build_conf.get('cc'),
            concurrency=build_conf.get('concurrency-level'),
            excluded_modules=package.modules.excluded,
            make_vars=build_conf['make-variables'],
            env=self.env,
        )

    def make_signing(self, runner):
        signing_conf = self.conf['signing']
        return SigningService(
            runner=runner,
            ui=self.ui,
            secret_key=signing_conf.get('secret-key'),
            public_key=signing_conf.get('public-key'),
            hash_algo=signing_conf.get('hash'),
            sign_file=signing_conf.get('sign-file'),
        )

    def _prepare_build(self, package):
        kernel_conf = self.conf['kernel']
        source, output = self.path_resolver().resolve(
            source_path=self._explicit(kernel_conf, 'source-path'),
            output_path=self._explicit(kernel_conf, 'output-path'),
            include_path=kernel_conf.get('include-path'),
        )
        runner = self.make_runner(package, source, output)
        signing = self.make_signing(runner)
        if signing.enabled:
            signing.check_keys()

        pipeline = BuildPipeline(
            package=package,
            runner=runner,
            ui=self.ui,
            signing=signing,
            ignore_cc_mismatch=self.conf['build'].get('ignore-cc-mismatch'),
        )
        return (runner, pipeline)

    def _store_bundle(self, package, pipeline):
        """
        Build and package the kernel interfaces, and write the bundle in the
        package precompiled directory.
        """
        kernel_info = self.kernel_info
        if not kernel_info.is_running or not kernel_info.proc_version:
            raise ConfigurationError('Precompiled kernel interfaces can only be created for the running kernel')

        outcome = pipeline.build(package_interfaces=True)
        bundle = PrecompiledBundle(
            description=f'{kernel_info.name} {kernel_info.machine}',
            proc_version=kernel_info.proc_version,
            driver_version=package.version,
            artifacts=outcome.artifacts,
        )

        os.makedirs(package.precompiled_directory, exist_ok=True)
        path = os.path.join(package.precompiled_directory, f'{package.name}-precompiled-{kernel_info.name}')
        bundle.to_path(path)
        self.ui.message(f'Precompiled kernel interfaces written to {path}')
        return path

    def add_this_kernel(self):
        """
        Build the precompiled kernel interfaces for the running kernel and
        add them to the package.

        :returns: The path to the new bundle.
        """
        _, package = self.select_package()
        _, pipeline = self._prepare_build(package)
        return self._store_bundle(package, pipeline)

    def _install_precompiled(self, package, bundle):
        """
        Extract the artifacts of ``bundle`` and link the kernel interfaces
        with their core object.
        """
        runner = self.make_runner(package)
        signing = self.make_signing(runner)
        build_dir = package.build_directory
        bundle.write_payloads(build_dir)

        for spec in package.modules:
            if not spec.has_separate_interface_file:
                continue

            artifact = bundle.get(spec.interface_filename)
            res = runner.link(build_dir, spec.filename, [artifact.name, artifact.core_object_name])
            if res.status:
                msg = f'Unable to link the precompiled kernel interface {artifact.name} with {artifact.core_object_name}: {res.output}'
                self.ui.error(msg)
                raise BuildError(msg)

            signing.attach_detached_signature(os.path.join(build_dir, spec.filename), artifact)

        return runner

    def _dependencies(self, package, module_dir):
        """
        Modules to preload for the load test: the configured ones and the
        ones declared in the ``.modinfo`` section of the built modules.
        """
        deps = list(self.conf['modules']['dependencies'])
        own = set(package.modules.names)
        for spec in package.modules:
            path = os.path.join(module_dir, spec.filename)
            try:
                declared = module_depends(path)
            except (OSError, ELFError) as e:
                self.logger.debug(f'Could not read the dependencies of {path}: {e}')
                continue

            deps.extend(
                name
                for name in declared
                if name not in own and name not in deps
            )
        return deps

    def make_load_tester(self, package, runner, module_dir, output_path=None):
        load_conf = self.conf['load-test']
        proc = self.conf['kernel']['proc-mount-point']
        warnings_path = load_conf.get('warnings-path') or os.path.join(proc, 'driver', package.name, 'warnings')
        return LoadTester(
            kernel_info=self.kernel_info,
            runner=runner,
            ui=self.ui,
            inserter=self.inserter,
            dependencies=self._dependencies(package, module_dir),
            params=self.conf['modules']['params'],
            pause_udev=load_conf['pause-udev'],
            warnings_path=warnings_path,
            dmesg_lines=load_conf['dmesg-lines'],
            secure_boot=secure_boot_enabled(),
            kernel_config=read_kernel_config(self.kernel_info, output_path, proc_mount_point=proc),
            proc_mount_point=proc,
        )

    def install(self):
        """
        Get the kernel modules ready for installation: from a matching
        precompiled bundle if there is one, built from source otherwise.
        They are then load tested.

        :returns: An :class:`InstallOutcome`.
        """
        ui = self.ui
        conf = self.conf
        ui.log(f'Installing kernel modules for kernel {self.kernel_info}')

        module_type, package = self.select_package()

        matcher = ArtifactMatcher(self.kernel_info, ui, expert=self.expert)
        bundle = matcher.find_precompiled(
            package,
            search_path=conf['precompiled'].get('search-path'),
            skip=conf['precompiled']['skip'],
        )

        if bundle is None:
            runner, pipeline = self._prepare_build(package)
            outcome = pipeline.build()
            ui.log(f'Built {outcome.nr_built} kernel modules')
            module_dir = outcome.module_dir
            if conf['precompiled']['package-interfaces']:
                self._store_bundle(package, pipeline)
        else:
            runner = self._install_precompiled(package, bundle)
            module_dir = package.build_directory

        tester = self.make_load_tester(package, runner, module_dir, output_path=runner.output_path)
        tester.unload_conflicting(package.conflicting_modules)
        load_tested = tester.test(package.modules, module_dir, skip=conf['load-test']['skip'])

        installation_path = self.path_resolver().module_installation_path(
            explicit=conf['kernel'].get('module-installation-path'),
        )

        return InstallOutcome(
            module_type=module_type,
            module_dir=module_dir,
            modules=package.modules,
            installation_path=installation_path,
            bundle=bundle,
            load_tested=load_tested,
        )

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
