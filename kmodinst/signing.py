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
Kernel module signing.

Modules are signed with the ``scripts/sign-file`` helper of the kernel tree.
Precompiled interfaces carry a detached signature, computed at packaging time
on the linked module. It is only attached back once the module linked on the
installation system is proven identical with a CRC check.
"""

import enum
import os
import os.path

from kmodinst.crc import compute_crc
from kmodinst.exception import ConfigurationError, IntegrityError, SigningError
from kmodinst.utils import Loggable

SIGN_FILE = 'sign-file'
"""
Name of the kernel module signing helper.
"""

MODULE_SIGNATURE_MARKER = b'~Module signature appended~\n'
"""
Trailer of a signed kernel module.
"""


def is_signed(path):
    """
    ``True`` if the kernel module at ``path`` carries a signature.
    """
    size = len(MODULE_SIGNATURE_MARKER)
    try:
        with open(path, 'rb') as f:
            f.seek(0, os.SEEK_END)
            if f.tell() < size:
                return False
            f.seek(-size, os.SEEK_END)
            return f.read(size) == MODULE_SIGNATURE_MARKER
    except OSError:
        return False


class AttachResult(enum.Enum):
    """
    Outcome of :meth:`SigningService.attach_detached_signature`.
    """
    ATTACHED = 'attached'
    """
    The signature was appended to the module.
    """

    UNSIGNED = 'unsigned'
    """
    The operator chose to install the module without its signature.
    """

    NO_SIGNATURE = 'no-signature'
    """
    The artifact has no detached signature.
    """


class SigningService(Loggable):
    """
    Sign kernel modules and handle detached signatures.

    :param runner: Toolchain runner, used to run the signing helper, the
        linker and the feature tests.
    :type runner: kmodinst.toolchain.ToolchainRunner

    :param ui: Operator interface.
    :type ui: kmodinst.ui.UserInterface

    :param secret_key: Path to the private signing key.
    :type secret_key: str or None

    :param public_key: Path to the X.509 certificate matching
        ``secret_key``.
    :type public_key: str or None

    :param hash_algo: Hash algorithm, e.g. ``sha256``. If ``None``, the one
        the kernel is configured for is used.
    :type hash_algo: str or None

    :param sign_file: Path to the signing helper. If ``None``, it is looked up
        in the kernel trees.
    :type sign_file: str or None
    """
    def __init__(self, runner, ui, secret_key=None, public_key=None, hash_algo=None, sign_file=None):
        self.runner = runner
        self.ui = ui
        self.secret_key = secret_key
        self.public_key = public_key
        self.hash_algo = hash_algo
        self.sign_file = sign_file
        self._resolved_sign_file = None
        self._resolved_hash = None

    @property
    def enabled(self):
        """
        ``True`` if signing keys are configured.
        """
        return bool(self.secret_key or self.public_key)

    def check_keys(self):
        """
        :raises kmodinst.exception.ConfigurationError: if one of the keys is
            missing.
        """
        for name, path in (
            ('signing/secret-key', self.secret_key),
            ('signing/public-key', self.public_key),
        ):
            if not path:
                raise ConfigurationError(f'Module signing requires both keys, please set "{name}"')
            elif not os.path.isfile(path):
                raise ConfigurationError(f'The module signing key "{path}" set by "{name}" does not exist')

    def find_sign_file(self):
        """
        Locate the signing helper.

        The kernel output tree is searched first, then the source tree.
        """
        if self._resolved_sign_file:
            return self._resolved_sign_file

        if self.sign_file:
            if not os.access(self.sign_file, os.X_OK):
                raise ConfigurationError(f'The module signing helper "{self.sign_file}" set by "signing/sign-file" is not an executable file')
            path = self.sign_file
        else:
            candidates = [
                os.path.join(tree, 'scripts', SIGN_FILE)
                for tree in (self.runner.output_path, self.runner.source_path)
                if tree
            ]
            for path in candidates:
                if os.path.isfile(path) and os.access(path, os.X_OK):
                    break
            else:
                raise SigningError(f'Unable to find the module signing helper "{SIGN_FILE}" in {", ".join(candidates)}. Please set its path with the "signing/sign-file" configuration key')

        self.logger.debug(f'Using module signing helper: {path}')
        self._resolved_sign_file = path
        return path

    def resolve_hash(self, build_dir):
        """
        Hash algorithm to sign with: the explicit one, or the one the kernel
        is configured for.
        """
        if self.hash_algo:
            return self.hash_algo
        elif self._resolved_hash:
            return self._resolved_hash

        passed, output = self.runner.run_feature_test(build_dir, 'get_module_signing_hash')
        hash_algo = output.strip()
        if not passed or not hash_algo:
            raise SigningError(f'Unable to determine the module signing hash algorithm of the kernel: {output or "no output"}. Please set it with the "signing/hash" configuration key')

        self.logger.debug(f'Module signing hash algorithm: {hash_algo}')
        self._resolved_hash = hash_algo
        return hash_algo

    def sign(self, directory, filename):
        """
        Sign the kernel module ``directory/filename`` in place.

        :returns: The path of the signed module.
        :raises kmodinst.exception.SigningError: if signing failed.
        """
        self.check_keys()
        sign_file = self.find_sign_file()
        hash_algo = self.resolve_hash(directory)
        path = os.path.join(directory, filename)

        cmd = [sign_file, hash_algo, self.secret_key, self.public_key, path]
        res = self.runner.run(cmd, cwd=directory)
        self.runner.record(cmd, res)
        if res.status:
            raise SigningError(f'Failed to sign the kernel module {path}: {res.output}')

        self.ui.log(f'Signed kernel module: {path}')
        return path

    def link_and_detach_signature(self, build_dir, artifact, module_filename):
        """
        Link an interface artifact with its core object, sign the result and
        store the signature in the artifact.

        :param build_dir: Directory containing the interface and the core
            object.
        :type build_dir: str

        :param artifact: Interface artifact, updated in place.
        :type artifact: kmodinst.precompiled.PrecompiledArtifact

        :param module_filename: Name of the linked module.
        :type module_filename: str

        On failure, the artifact is left without any detached signature
        attribute.
        """
        path = os.path.join(build_dir, module_filename)
        artifact.clear_detached_signature()

        res = self.runner.link(build_dir, path, [artifact.name, artifact.core_object_name])
        if res.status:
            raise SigningError(f'Unable to link {artifact.name} with {artifact.core_object_name}: {res.output}')

        crc = compute_crc(path)
        unsigned_size = os.path.getsize(path)

        self.sign(build_dir, module_filename)

        with open(path, 'rb') as f:
            f.seek(unsigned_size)
            signature = f.read()

        if not signature:
            raise SigningError(f'Signing {path} did not append any signature')

        artifact.set_detached_signature(crc, signature)
        self.logger.debug(f'Detached {len(signature)} bytes signature of {module_filename} (CRC {crc:#010x})')
        return path

    def attach_detached_signature(self, path, artifact):
        """
        Append the detached signature of ``artifact`` to the linked module at
        ``path``, if the module is identical to the one that was signed.

        :returns: An :class:`AttachResult`.
        :raises kmodinst.exception.IntegrityError: if the signature could not
            be attached and the operator refused to install the module
            unsigned.
        """
        logger = self.logger
        if not artifact.has_detached_signature:
            return AttachResult.NO_SIGNATURE

        def append(signature):
            size = os.path.getsize(path)
            try:
                with open(path, 'ab') as f:
                    written = f.write(signature)
                    f.flush()
                if written != len(signature):
                    raise OSError(f'Short write: {written}/{len(signature)} bytes')
            except OSError:
                # Do not leave a truncated signature behind
                os.truncate(path, size)
                raise

        try:
            crc = compute_crc(path)
        except OSError as e:
            problem = f'Unable to read the linked kernel module {path}: {e}'
        else:
            if crc != artifact.linked_module_crc:
                problem = f'The CRC of the linked kernel module {path} ({crc:#010x}) does not match the one recorded when it was signed ({artifact.linked_module_crc:#010x}). This usually means the module was linked with a different linker than the one used to sign it.'
            else:
                try:
                    append(artifact.detached_signature)
                except OSError as e:
                    problem = f'Unable to append the signature to {path}: {e}'
                else:
                    logger.debug(f'Attached detached signature to {path}')
                    return AttachResult.ATTACHED

        self.ui.warn(problem)
        choice = self.ui.multiple_choice(
            f'The detached signature of {artifact.name} could not be attached. Do you want to install the kernel module unsigned?',
            ['Install unsigned kernel module', 'Abort installation'],
            1,
        )
        if choice == 0:
            self.ui.warn(f'Installing the kernel module {path} without signature, as requested by the operator')
            return AttachResult.UNSIGNED
        else:
            raise IntegrityError(problem)

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
