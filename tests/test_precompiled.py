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

import os

from kmodinst.exception import BundleFormatError
from kmodinst.precompiled import (
    ArtifactAttr, ArtifactKind, ArtifactMatcher, PrecompiledArtifact,
    PrecompiledBundle, expected_artifact_names,
)
from .utils import (
    KERNEL_NAME, PROC_VERSION, SIGNATURE, ScriptedUI, StorageTestCase,
    core_spec, foreign_kernel, linked_core_spec, make_package, optional_spec,
    running_kernel,
)


def interface_artifact(signed=True):
    artifact = PrecompiledArtifact(
        kind=ArtifactKind.INTERFACE,
        name='core-interface.o',
        payload=b'interface payload',
        core_object_name='core-kernel.o',
    )
    if signed:
        artifact.set_detached_signature(0x1234abcd, SIGNATURE)
    return artifact


def module_artifact(name='uvm.ko'):
    return PrecompiledArtifact(
        kind=ArtifactKind.MODULE,
        name=name,
        payload=b'module payload',
        target_directory='extra',
        embedded_signature=True,
    )


def make_bundle(proc_version=PROC_VERSION, driver_version='1.0', artifacts=None, description='test kernel'):
    if artifacts is None:
        artifacts = [interface_artifact(), module_artifact()]
    return PrecompiledBundle(
        description=description,
        proc_version=proc_version,
        driver_version=driver_version,
        artifacts=artifacts,
    )


class TestPrecompiledArtifact(StorageTestCase):
    def test_detached_signature_implies_crc(self):
        artifact = interface_artifact(signed=False)
        self.assertFalse(artifact.has_detached_signature)
        self.assertNotIn(ArtifactAttr.LINKED_MODULE_CRC, artifact.attributes)

        artifact.set_detached_signature(42, SIGNATURE)
        self.assertTrue(artifact.has_detached_signature)
        self.assertIn(ArtifactAttr.LINKED_MODULE_CRC, artifact.attributes)
        self.assertEqual(artifact.linked_module_crc, 42)

        artifact.clear_detached_signature()
        self.assertFalse(artifact.has_detached_signature)
        self.assertNotIn(ArtifactAttr.LINKED_MODULE_CRC, artifact.attributes)
        self.assertEqual(artifact.detached_signature, b'')

    def test_empty_signature(self):
        artifact = interface_artifact(signed=False)
        with self.assertRaises(ValueError):
            artifact.set_detached_signature(42, b'')
        self.assertFalse(artifact.has_detached_signature)

    def test_interface_needs_core_object(self):
        with self.assertRaises(BundleFormatError):
            PrecompiledArtifact(ArtifactKind.INTERFACE, 'core-interface.o', b'data')

    def test_module_has_no_core_object(self):
        with self.assertRaises(BundleFormatError):
            PrecompiledArtifact(ArtifactKind.MODULE, 'core.ko', b'data', core_object_name='core-kernel.o')

    def test_invalid_name(self):
        with self.assertRaises(BundleFormatError):
            PrecompiledArtifact(ArtifactKind.MODULE, '../core.ko', b'data')

    def test_inconsistent_attributes(self):
        artifact = interface_artifact(signed=False)
        artifact.attributes |= ArtifactAttr.DETACHED_SIGNATURE
        with self.assertRaises(BundleFormatError):
            artifact.validate()


class TestPrecompiledBundle(StorageTestCase):
    def test_serialization(self):
        bundle = make_bundle()
        path = self.path('bundle')
        bundle.to_path(path)
        loaded = PrecompiledBundle.from_path(path)

        self.assertEqual(loaded.path, path)
        self.assertEqual(loaded.description, 'test kernel')
        self.assertEqual(loaded.proc_version, PROC_VERSION)
        self.assertEqual(loaded.driver_version, '1.0')
        self.assertEqual([a.name for a in loaded.artifacts], ['core-interface.o', 'uvm.ko'])

        interface = loaded.get('core-interface.o')
        self.assertEqual(interface.kind, ArtifactKind.INTERFACE)
        self.assertEqual(interface.core_object_name, 'core-kernel.o')
        self.assertEqual(interface.payload, b'interface payload')
        self.assertEqual(interface.linked_module_crc, 0x1234abcd)
        self.assertEqual(interface.detached_signature, SIGNATURE)
        self.assertTrue(interface.has_detached_signature)

        module = loaded.get('uvm.ko')
        self.assertEqual(module.kind, ArtifactKind.MODULE)
        self.assertIsNone(module.core_object_name)
        self.assertEqual(module.target_directory, 'extra')
        self.assertTrue(module.has_embedded_signature)
        self.assertFalse(module.has_detached_signature)

    def test_payload_corruption(self):
        data = bytearray(make_bundle().to_bytes())
        # The payload of the last artifact is at the very end
        data[-1] ^= 0xff
        with self.assertRaises(BundleFormatError) as ctx:
            PrecompiledBundle.from_bytes(bytes(data))
        self.assertIn('CRC', str(ctx.exception))

    def test_bad_magic(self):
        data = make_bundle().to_bytes()
        with self.assertRaises(BundleFormatError):
            PrecompiledBundle.from_bytes(b'X' + data[1:])

    def test_truncated(self):
        data = make_bundle().to_bytes()
        with self.assertRaises(BundleFormatError):
            PrecompiledBundle.from_bytes(data[:-3])

    def test_trailing_bytes(self):
        data = make_bundle().to_bytes()
        with self.assertRaises(BundleFormatError):
            PrecompiledBundle.from_bytes(data + b'\0')

    def test_provides(self):
        bundle = make_bundle()
        self.assertTrue(bundle.provides(['core-interface.o', 'uvm.ko']))
        self.assertFalse(bundle.provides(['core-interface.o', 'drm.ko']))

    def test_write_payloads(self):
        paths = make_bundle().write_payloads(self.res_dir)
        self.assertEqual(set(paths), {'core-interface.o', 'uvm.ko'})
        with open(paths['uvm.ko'], 'rb') as f:
            self.assertEqual(f.read(), b'module payload')

    def test_expected_artifact_names(self):
        package = make_package(self.res_dir, [linked_core_spec(), optional_spec()])
        self.assertEqual(expected_artifact_names(package.modules), ['core-interface.o', 'uvm.ko'])


class TestArtifactMatcher(StorageTestCase):
    def setUp(self):
        super().setUp()
        self.ui = ScriptedUI()
        self.package = make_package(
            self.path('kernel'),
            [linked_core_spec(), optional_spec()],
            precompiled_directory=self.path('kernel', 'precompiled'),
        )

    def matcher(self, expert=False, kernel_info=None):
        return ArtifactMatcher(
            kernel_info or running_kernel(),
            self.ui,
            expert=expert,
            distro_root=self.path('lib', 'modules', 'precompiled'),
        )

    def store(self, directory, name, bundle):
        os.makedirs(directory, exist_ok=True)
        bundle.to_path(os.path.join(directory, name))
        return bundle

    def test_package_dir(self):
        self.store(self.package.precompiled_directory, 'bundle', make_bundle(description='shipped'))
        bundle = self.matcher().find_precompiled(self.package)
        self.assertEqual(bundle.description, 'shipped')
        self.assertEqual(bundle.path, os.path.join(self.package.precompiled_directory, 'bundle'))

    def test_root_priority(self):
        search_path = self.path('search')
        self.store(search_path, 'bundle', make_bundle(description='operator'))
        self.store(self.package.precompiled_directory, 'bundle', make_bundle(description='shipped'))
        distro_dir = self.matcher().distro_dir(self.package)
        self.store(distro_dir, 'bundle', make_bundle(description='distro'))

        self.assertEqual(distro_dir, self.path('lib', 'modules', 'precompiled', KERNEL_NAME, 'testdriver'))
        self.assertEqual(self.matcher().find_precompiled(self.package, search_path=search_path).description, 'operator')
        self.assertEqual(self.matcher().find_precompiled(self.package).description, 'distro')

    def test_first_entry_wins(self):
        directory = self.package.precompiled_directory
        self.store(directory, 'b', make_bundle(description='second'))
        self.store(directory, 'a', make_bundle(description='first'))
        self.assertEqual(self.matcher().find_precompiled(self.package).description, 'first')

    def test_mismatches_ignored(self):
        directory = self.package.precompiled_directory
        self.store(directory, 'a-proc', make_bundle(proc_version=PROC_VERSION + ' '))
        self.store(directory, 'b-version', make_bundle(driver_version='0.9'))
        self.store(directory, 'c-missing', make_bundle(artifacts=[interface_artifact()]))
        with open(os.path.join(directory, 'd-garbage'), 'wb') as f:
            f.write(b'not a bundle')
        os.makedirs(os.path.join(directory, 'e-dir'))

        self.assertIsNone(self.matcher().find_precompiled(self.package))
        self.assertEqual(len(self.ui.messages), 1)

        self.store(directory, 'f-good', make_bundle(description='good'))
        self.assertEqual(self.matcher().find_precompiled(self.package).description, 'good')

    def test_unknown_proc_version(self):
        self.store(self.package.precompiled_directory, 'bundle', make_bundle(proc_version=''))
        matcher = self.matcher(kernel_info=running_kernel(proc_version=None))
        self.assertIsNone(matcher.find_precompiled(self.package))

    def test_skip(self):
        self.store(self.package.precompiled_directory, 'bundle', make_bundle())
        self.assertIsNone(self.matcher().find_precompiled(self.package, skip=True))
        self.assertEqual(self.ui.messages, [])

    def test_not_running(self):
        self.store(self.package.precompiled_directory, 'bundle', make_bundle())
        matcher = self.matcher(expert=True, kernel_info=foreign_kernel())
        self.assertIsNone(matcher.find_precompiled(self.package))
        self.assertEqual(self.ui.questions, [])
        self.assertEqual(self.ui.messages, [])

    def test_expert_decline(self):
        self.store(self.package.precompiled_directory, 'bundle', make_bundle())
        self.ui.answers = [False]
        self.assertIsNone(self.matcher(expert=True).find_precompiled(self.package))
        self.assertEqual(len(self.ui.questions), 1)

    def test_expert_accept(self):
        self.store(self.package.precompiled_directory, 'bundle', make_bundle())
        self.assertIsNotNone(self.matcher(expert=True).find_precompiled(self.package))
        self.assertEqual(len(self.ui.questions), 1)

    def test_plain_modules(self):
        package = make_package(
            self.path('kernel'),
            [core_spec()],
            precompiled_directory=self.package.precompiled_directory,
        )
        self.store(package.precompiled_directory, 'a', make_bundle())
        self.store(package.precompiled_directory, 'b', make_bundle(
            artifacts=[module_artifact('core.ko')],
            description='plain',
        ))
        self.assertEqual(self.matcher().find_precompiled(package).description, 'plain')

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
