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

from kmodinst.crc import compute_crc, compute_crc_from_buffer
from kmodinst.exception import ConfigurationError, IntegrityError, SigningError
from kmodinst.precompiled import ArtifactKind, PrecompiledArtifact
from kmodinst.signing import AttachResult, SigningService, is_signed
from kmodinst.toolchain import CommandResult
from .utils import (
    SIGNATURE, FakeKbuild, FakeRunner, ScriptedUI, StorageTestCase,
    linked_content, linked_core_spec, make_build_dir, make_executable,
    make_kernel_tree, read_file, running_kernel, write_file,
)


class SigningTestCase(StorageTestCase):
    def setUp(self):
        super().setUp()
        self.ui = ScriptedUI()
        self.tree = make_kernel_tree(self.path('linux'))
        self.build_dir = make_build_dir(self.path('kernel'), ['core-kernel.o'])
        self.secret_key = write_file(self.path('keys', 'signing_key.pem'), 'secret')
        self.public_key = write_file(self.path('keys', 'signing_key.x509'), 'public')
        self.kbuild = FakeKbuild(
            [linked_core_spec()],
            feature_tests={'get_module_signing_hash': (0, 'sha256\n')},
        )

    def runner(self, handler=None, source=None, output=None):
        return FakeRunner(
            running_kernel(),
            source or self.tree,
            output or self.tree,
            self.ui,
            handler=handler or self.kbuild,
        )

    def service(self, runner=None, **kwargs):
        kwargs.setdefault('secret_key', self.secret_key)
        kwargs.setdefault('public_key', self.public_key)
        return SigningService(runner or self.runner(), self.ui, **kwargs)

    def interface_artifact(self, payload=b'interface'):
        write_file(os.path.join(self.build_dir, 'core-interface.o'), payload)
        return PrecompiledArtifact(
            kind=ArtifactKind.INTERFACE,
            name='core-interface.o',
            payload=payload,
            core_object_name='core-kernel.o',
        )


class TestSigningService(SigningTestCase):
    def test_enabled(self):
        self.assertFalse(SigningService(self.runner(), self.ui).enabled)
        self.assertTrue(SigningService(self.runner(), self.ui, secret_key=self.secret_key).enabled)

    def test_check_keys(self):
        self.service().check_keys()

        with self.assertRaises(ConfigurationError) as ctx:
            self.service(public_key=None).check_keys()
        self.assertIn('signing/public-key', str(ctx.exception))

        with self.assertRaises(ConfigurationError) as ctx:
            self.service(secret_key=self.path('missing.pem')).check_keys()
        self.assertIn('missing.pem', str(ctx.exception))

    def test_find_sign_file(self):
        output = make_kernel_tree(self.path('linux-obj'))
        service = self.service(runner=self.runner(output=output))
        self.assertEqual(service.find_sign_file(), os.path.join(output, 'scripts', 'sign-file'))

    def test_find_sign_file_source(self):
        output = make_kernel_tree(self.path('linux-obj'), sign_file=False)
        service = self.service(runner=self.runner(output=output))
        self.assertEqual(service.find_sign_file(), os.path.join(self.tree, 'scripts', 'sign-file'))

    def test_find_sign_file_missing(self):
        tree = make_kernel_tree(self.path('linux-nosign'), sign_file=False)
        service = self.service(runner=self.runner(source=tree, output=tree))
        with self.assertRaises(SigningError):
            service.find_sign_file()

    def test_explicit_sign_file(self):
        helper = make_executable(write_file(self.path('bin', 'sign-file'), '#! /bin/sh\n'))
        self.assertEqual(self.service(sign_file=helper).find_sign_file(), helper)

        not_executable = write_file(self.path('bin', 'not-executable'), '')
        with self.assertRaises(ConfigurationError):
            self.service(sign_file=not_executable).find_sign_file()

    def test_resolve_hash(self):
        runner = self.runner()
        self.assertEqual(self.service(runner=runner).resolve_hash(self.build_dir), 'sha256')
        self.assertEqual(len(runner.cmds_of('sh')), 1)

        runner = self.runner()
        self.assertEqual(self.service(runner=runner, hash_algo='sha512').resolve_hash(self.build_dir), 'sha512')
        self.assertEqual(runner.cmds, [])

    def test_resolve_hash_failure(self):
        self.kbuild.feature_tests['get_module_signing_hash'] = (1, 'CONFIG_MODULE_SIG_HASH is not set')
        with self.assertRaises(SigningError) as ctx:
            self.service().resolve_hash(self.build_dir)
        self.assertIn('signing/hash', str(ctx.exception))

    def test_sign(self):
        path = write_file(os.path.join(self.build_dir, 'core.ko'), b'module')
        runner = self.runner()
        self.service(runner=runner).sign(self.build_dir, 'core.ko')

        self.assertEqual(read_file(path), b'module' + SIGNATURE)
        self.assertTrue(is_signed(path))
        sign_file = os.path.join(self.tree, 'scripts', 'sign-file')
        self.assertEqual(runner.cmds_of('sign-file'), [[sign_file, 'sha256', self.secret_key, self.public_key, path]])
        self.assertIn(path, runner.build_log_text)

    def test_sign_failure(self):
        def handler(cmd, cwd):
            if cmd[0].endswith('sign-file'):
                return CommandResult(1, 'Bad key')
            return self.kbuild(cmd, cwd)

        write_file(os.path.join(self.build_dir, 'core.ko'), b'module')
        with self.assertRaises(SigningError) as ctx:
            self.service(runner=self.runner(handler=handler)).sign(self.build_dir, 'core.ko')
        self.assertIn('Bad key', str(ctx.exception))

    def test_is_signed(self):
        self.assertFalse(is_signed(write_file(self.path('short.ko'), b'x')))
        self.assertFalse(is_signed(self.path('missing.ko')))


class TestDetachedSignature(SigningTestCase):
    def test_link_and_detach(self):
        artifact = self.interface_artifact(b'interface')
        path = self.service().link_and_detach_signature(self.build_dir, artifact, 'core.ko')

        unsigned = linked_content(b'interface', b'core object core-kernel.o')
        self.assertEqual(path, os.path.join(self.build_dir, 'core.ko'))
        self.assertEqual(read_file(path), unsigned + SIGNATURE)
        self.assertTrue(artifact.has_detached_signature)
        self.assertEqual(artifact.detached_signature, SIGNATURE)
        self.assertEqual(artifact.linked_module_crc, compute_crc_from_buffer(unsigned))

    def test_link_failure(self):
        def handler(cmd, cwd):
            if cmd[0] == 'ld':
                return CommandResult(1, 'undefined reference')
            return self.kbuild(cmd, cwd)

        artifact = self.interface_artifact()
        artifact.set_detached_signature(1, b'stale')
        with self.assertRaises(SigningError):
            self.service(runner=self.runner(handler=handler)).link_and_detach_signature(self.build_dir, artifact, 'core.ko')
        self.assertFalse(artifact.has_detached_signature)

    def linked_module(self, content=b'linked module'):
        return write_file(os.path.join(self.build_dir, 'core.ko'), content)

    def signed_artifact(self, crc):
        artifact = self.interface_artifact()
        artifact.set_detached_signature(crc, SIGNATURE)
        return artifact

    def test_attach(self):
        path = self.linked_module()
        artifact = self.signed_artifact(compute_crc(path))
        res = self.service().attach_detached_signature(path, artifact)
        self.assertEqual(res, AttachResult.ATTACHED)
        self.assertEqual(read_file(path), b'linked module' + SIGNATURE)
        self.assertEqual(self.ui.questions, [])

    def test_attach_crc_mismatch(self):
        path = self.linked_module()
        artifact = self.signed_artifact(compute_crc(path) ^ 1)
        with self.assertRaises(IntegrityError):
            self.service().attach_detached_signature(path, artifact)

        # Nothing is appended to a module that differs from the signed one
        self.assertEqual(read_file(path), b'linked module')
        self.assertEqual(len(self.ui.questions), 1)
        self.assertIn('CRC', self.ui.warnings[0])

    def test_attach_crc_mismatch_install_unsigned(self):
        path = self.linked_module()
        artifact = self.signed_artifact(compute_crc(path) ^ 1)
        self.ui.answers = [0]
        res = self.service().attach_detached_signature(path, artifact)
        self.assertEqual(res, AttachResult.UNSIGNED)
        self.assertEqual(read_file(path), b'linked module')

    def test_attach_missing_module(self):
        artifact = self.signed_artifact(1)
        with self.assertRaises(IntegrityError):
            self.service().attach_detached_signature(self.path('kernel', 'missing.ko'), artifact)

    def test_no_signature(self):
        path = self.linked_module()
        artifact = self.interface_artifact()
        res = self.service().attach_detached_signature(path, artifact)
        self.assertEqual(res, AttachResult.NO_SIGNATURE)
        self.assertEqual(read_file(path), b'linked module')

    def test_detach_then_attach(self):
        artifact = self.interface_artifact(b'interface')
        path = self.service().link_and_detach_signature(self.build_dir, artifact, 'core.ko')
        signed = read_file(path)

        # Link again on the "installation" system, with the same linker
        os.remove(path)
        runner = self.runner()
        runner.link(self.build_dir, 'core.ko', [artifact.name, artifact.core_object_name])
        res = self.service(runner=runner).attach_detached_signature(path, artifact)
        self.assertEqual(res, AttachResult.ATTACHED)
        self.assertEqual(read_file(path), signed)

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
