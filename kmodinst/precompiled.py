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
Precompiled kernel interfaces and modules.

A precompiled bundle contains the artifacts built for one exact kernel,
identified by its ``/proc/version`` signature. Installing from a bundle avoids
the need for a compiler and a kernel source tree on the system.

The bundle binary format is little endian. Strings and blobs are stored as a
``u32`` length followed by the bytes::

    magic "KMODPKG\\0"
    u32   format version
    str   driver version
    str   proc version signature
    str   description
    u32   artifact count
    artifact*:
        u32  kind
        u32  attributes
        u32  payload crc
        u32  linked module crc
        str  payload name
        str  core object name
        str  target directory
        blob detached signature
        blob payload
"""

import enum
import os
import os.path
import struct

from kmodinst.crc import compute_crc_from_buffer
from kmodinst.exception import BundleFormatError
from kmodinst.utils import Loggable

BUNDLE_MAGIC = b'KMODPKG\0'
BUNDLE_FORMAT_VERSION = 1

_U32 = struct.Struct('<I')


def payload_crc(data):
    """
    Checksum of an in-memory payload. An empty payload has a checksum of
    ``0``, consistently with :func:`kmodinst.crc.compute_crc`.
    """
    return compute_crc_from_buffer(data) if data else 0


class ArtifactKind(enum.IntEnum):
    """
    Kind of :class:`PrecompiledArtifact`.
    """
    INTERFACE = 1
    """
    Kernel interface object, to be linked with the core object of the
    module.
    """

    MODULE = 2
    """
    Complete kernel module.
    """


class ArtifactAttr(enum.IntFlag):
    """
    Attributes of a :class:`PrecompiledArtifact`.
    """
    DETACHED_SIGNATURE = 1
    LINKED_MODULE_CRC = 2
    EMBEDDED_SIGNATURE = 4


class PrecompiledArtifact:
    """
    One artifact of a precompiled bundle.

    :param kind: Kind of artifact.
    :type kind: ArtifactKind

    :param name: File name of the payload.
    :type name: str

    :param payload: Content of the artifact.
    :type payload: bytes

    :param core_object_name: Name of the core object the interface must be
        linked with. Only for :attr:`ArtifactKind.INTERFACE`.
    :type core_object_name: str or None

    :param target_directory: Subdirectory of the installation path the module
        is installed in.
    :type target_directory: str

    :param embedded_signature: ``True`` if the payload already carries a
        signature.
    :type embedded_signature: bool
    """
    def __init__(self, kind, name, payload, core_object_name=None, target_directory='', embedded_signature=False):
        self.kind = ArtifactKind(kind)
        self.name = name
        self.payload = bytes(payload)
        self.core_object_name = core_object_name or None
        self.target_directory = target_directory or ''
        self.attributes = ArtifactAttr.EMBEDDED_SIGNATURE if embedded_signature else ArtifactAttr(0)
        self.linked_module_crc = 0
        self.detached_signature = b''
        self.validate()

    @property
    def payload_crc(self):
        return payload_crc(self.payload)

    @property
    def has_detached_signature(self):
        return ArtifactAttr.DETACHED_SIGNATURE in self.attributes

    @property
    def has_embedded_signature(self):
        return ArtifactAttr.EMBEDDED_SIGNATURE in self.attributes

    def set_detached_signature(self, linked_module_crc, signature):
        """
        Record the signature of the linked module, along with the checksum of
        the linked module it was computed for.
        """
        if not signature:
            raise ValueError(f'Empty detached signature for {self.name}')

        self.linked_module_crc = linked_module_crc
        self.detached_signature = bytes(signature)
        self.attributes |= ArtifactAttr.DETACHED_SIGNATURE | ArtifactAttr.LINKED_MODULE_CRC

    def clear_detached_signature(self):
        self.linked_module_crc = 0
        self.detached_signature = b''
        self.attributes &= ~(ArtifactAttr.DETACHED_SIGNATURE | ArtifactAttr.LINKED_MODULE_CRC)

    def validate(self):
        """
        :raises kmodinst.exception.BundleFormatError: if the artifact is
            inconsistent.
        """
        if not self.name or os.path.basename(self.name) != self.name:
            raise BundleFormatError(f'Invalid artifact name: "{self.name}"')

        if self.kind == ArtifactKind.INTERFACE and not self.core_object_name:
            raise BundleFormatError(f'Interface artifact "{self.name}" has no core object')

        if self.kind == ArtifactKind.MODULE and self.core_object_name:
            raise BundleFormatError(f'Module artifact "{self.name}" cannot have a core object')

        detached = ArtifactAttr.DETACHED_SIGNATURE in self.attributes
        crc = ArtifactAttr.LINKED_MODULE_CRC in self.attributes
        if detached != crc:
            raise BundleFormatError(f'Artifact "{self.name}" must have both a detached signature and a linked module CRC, or neither')

        if detached and not self.detached_signature:
            raise BundleFormatError(f'Artifact "{self.name}" has an empty detached signature')

    def __repr__(self):
        return f'{self.__class__.__qualname__}({self.kind.name}, {self.name!r}, attributes={self.attributes!r})'


class _Reader:
    def __init__(self, data):
        self.data = memoryview(data)
        self.pos = 0

    def _take(self, size, what):
        end = self.pos + size
        if end > len(self.data):
            raise BundleFormatError(f'Truncated bundle while reading {what}: {size} bytes needed, {len(self.data) - self.pos} left')
        chunk = self.data[self.pos:end]
        self.pos = end
        return bytes(chunk)

    def u32(self, what):
        return _U32.unpack(self._take(_U32.size, what))[0]

    def blob(self, what):
        return self._take(self.u32(what), what)

    def str(self, what):
        try:
            return self.blob(what).decode('utf-8')
        except UnicodeDecodeError as e:
            raise BundleFormatError(f'Invalid {what}: {e}') from e


def _pack_blob(data):
    return _U32.pack(len(data)) + data


def _pack_str(s):
    return _pack_blob((s or '').encode('utf-8'))


class PrecompiledBundle:
    """
    Set of artifacts built for a given kernel.

    :param description: Human readable description of the kernel.
    :type description: str

    :param proc_version: ``/proc/version`` signature of the kernel the
        artifacts were built for.
    :type proc_version: str

    :param driver_version: Version of the driver the artifacts belong to.
    :type driver_version: str

    :param artifacts: Ordered artifacts.
    :type artifacts: list(PrecompiledArtifact)
    """
    def __init__(self, description, proc_version, driver_version, artifacts=None):
        self.description = description
        self.proc_version = proc_version
        self.driver_version = driver_version
        self.artifacts = list(artifacts or [])
        self.path = None

    def get(self, name):
        for artifact in self.artifacts:
            if artifact.name == name:
                return artifact
        return None

    def provides(self, names):
        """
        ``True`` if the bundle has an artifact for each of ``names``.
        """
        return all(self.get(name) is not None for name in names)

    def to_bytes(self):
        chunks = [
            BUNDLE_MAGIC,
            _U32.pack(BUNDLE_FORMAT_VERSION),
            _pack_str(self.driver_version),
            _pack_str(self.proc_version),
            _pack_str(self.description),
            _U32.pack(len(self.artifacts)),
        ]
        for artifact in self.artifacts:
            artifact.validate()
            chunks.extend((
                _U32.pack(artifact.kind),
                _U32.pack(artifact.attributes),
                _U32.pack(artifact.payload_crc),
                _U32.pack(artifact.linked_module_crc),
                _pack_str(artifact.name),
                _pack_str(artifact.core_object_name),
                _pack_str(artifact.target_directory),
                _pack_blob(artifact.detached_signature),
                _pack_blob(artifact.payload),
            ))
        return b''.join(chunks)

    @classmethod
    def from_bytes(cls, data):
        """
        Decode a bundle.

        :raises kmodinst.exception.BundleFormatError: if the data is not a
            valid bundle.
        """
        reader = _Reader(data)
        magic = reader._take(len(BUNDLE_MAGIC), 'magic')
        if magic != BUNDLE_MAGIC:
            raise BundleFormatError('Not a precompiled bundle')

        version = reader.u32('format version')
        if version != BUNDLE_FORMAT_VERSION:
            raise BundleFormatError(f'Unsupported bundle format version: {version}')

        driver_version = reader.str('driver version')
        proc_version = reader.str('proc version signature')
        description = reader.str('description')
        count = reader.u32('artifact count')

        def read_artifact(i):
            try:
                kind = ArtifactKind(reader.u32('artifact kind'))
            except ValueError as e:
                raise BundleFormatError(f'Invalid kind of artifact #{i}: {e}') from e
            attributes = ArtifactAttr(reader.u32('artifact attributes'))
            crc = reader.u32('payload crc')
            linked_crc = reader.u32('linked module crc')
            name = reader.str('payload name')
            core_object_name = reader.str('core object name')
            target_directory = reader.str('target directory')
            signature = reader.blob('detached signature')
            payload = reader.blob('payload')

            artifact = PrecompiledArtifact(
                kind=kind,
                name=name,
                payload=payload,
                core_object_name=core_object_name,
                target_directory=target_directory,
            )
            artifact.attributes = attributes
            artifact.linked_module_crc = linked_crc
            artifact.detached_signature = signature
            artifact.validate()

            if artifact.payload_crc != crc:
                raise BundleFormatError(f'Payload CRC mismatch for artifact "{name}": expected {crc:#010x}, got {artifact.payload_crc:#010x}')
            return artifact

        artifacts = [read_artifact(i) for i in range(count)]

        if reader.pos != len(reader.data):
            raise BundleFormatError(f'{len(reader.data) - reader.pos} trailing bytes after the last artifact')

        return cls(
            description=description,
            proc_version=proc_version,
            driver_version=driver_version,
            artifacts=artifacts,
        )

    @classmethod
    def from_path(cls, path):
        with open(path, 'rb') as f:
            bundle = cls.from_bytes(f.read())
        bundle.path = path
        return bundle

    def to_path(self, path):
        with open(path, 'wb') as f:
            f.write(self.to_bytes())
        self.path = path

    def write_payloads(self, directory):
        """
        Write the payload of each artifact to ``directory``.

        :returns: A mapping of artifact names to the written paths.
        """
        paths = {}
        for artifact in self.artifacts:
            path = os.path.join(directory, artifact.name)
            with open(path, 'wb') as f:
                f.write(artifact.payload)
            paths[artifact.name] = path
        return paths

    def __str__(self):
        return self.description


def expected_artifact_names(modules):
    """
    Names of the artifacts a bundle must provide for the given modules: the
    interface object for modules linked at install time, the module file
    otherwise.

    :param modules: Kernel modules.
    :type modules: kmodinst.package.KernelModuleSet
    """
    return [
        spec.interface_filename if spec.has_separate_interface_file else spec.filename
        for spec in modules
    ]


class ArtifactMatcher(Loggable):
    """
    Find a precompiled bundle matching the running kernel.

    :param kernel_info: Running kernel.
    :type kernel_info: kmodinst.kernel.KernelInfo

    :param ui: Operator interface.
    :type ui: kmodinst.ui.UserInterface

    :param expert: If ``True``, ask the operator before using a matching
        bundle.
    :type expert: bool

    :param distro_root: Root of the precompiled bundles installed by the
        distribution.
    :type distro_root: str
    """
    def __init__(self, kernel_info, ui, expert=False, distro_root='/lib/modules/precompiled'):
        self.kernel_info = kernel_info
        self.ui = ui
        self.expert = expert
        self.distro_root = distro_root

    def distro_dir(self, package):
        return os.path.join(self.distro_root, self.kernel_info.running_release, package.name)

    def search_roots(self, package, search_path=None):
        """
        Directories to search, in priority order: operator specified,
        distribution provided and finally shipped with the package.
        """
        roots = [
            search_path,
            self.distro_dir(package),
            package.precompiled_directory,
        ]
        return [root for root in roots if root]

    def scan_dir(self, directory, expected_filenames, proc_version, driver_version):
        """
        Return the first bundle of ``directory`` matching the kernel and the
        driver, or ``None``.
        """
        logger = self.logger
        try:
            entries = sorted(os.listdir(directory))
        except OSError as e:
            logger.debug(f'Cannot scan {directory} for precompiled bundles: {e}')
            return None

        for entry in entries:
            if entry in ('.', '..'):
                continue

            path = os.path.join(directory, entry)
            if not os.path.isfile(path):
                continue

            try:
                bundle = PrecompiledBundle.from_path(path)
            except (OSError, BundleFormatError) as e:
                logger.debug(f'Ignoring {path}: {e}')
                continue

            if bundle.proc_version != proc_version:
                logger.debug(f'Ignoring {path}: built for "{bundle.proc_version}"')
            elif bundle.driver_version != driver_version:
                logger.debug(f'Ignoring {path}: driver version {bundle.driver_version} does not match {driver_version}')
            elif not bundle.provides(expected_filenames):
                logger.debug(f'Ignoring {path}: does not provide all of {", ".join(expected_filenames)}')
            else:
                logger.debug(f'Found matching precompiled bundle: {path}')
                return bundle

        return None

    def find_match(self, search_roots, expected_filenames, proc_version, driver_version):
        """
        Scan ``search_roots`` in order and return the first matching bundle.

        :param search_roots: Directories to scan, in priority order.
        :type search_roots: list(str)

        :param expected_filenames: Artifacts the bundle must provide.
        :type expected_filenames: list(str)

        :param proc_version: ``/proc/version`` signature of the running
            kernel, compared byte for byte.
        :type proc_version: str

        :param driver_version: Version of the driver.
        :type driver_version: str
        """
        if not proc_version:
            self.logger.debug('Unknown kernel signature, no precompiled bundle can match')
            return None

        for root in search_roots:
            bundle = self.scan_dir(root, expected_filenames, proc_version, driver_version)
            if bundle is not None:
                return bundle
        return None

    def find_precompiled(self, package, search_path=None, skip=False):
        """
        Look for a precompiled bundle for the running kernel.

        Bundles are matched against the running kernel's ``/proc/version``,
        so nothing is searched when targeting another kernel.

        :param package: Driver package.
        :type package: kmodinst.package.Package

        :param search_path: Operator specified directory to search first.
        :type search_path: str or None

        :param skip: Do not search at all.
        :type skip: bool

        :returns: The bundle to use, or ``None`` if the modules must be built.
        """
        if skip:
            self.ui.log('Not probing for precompiled kernel interfaces.')
            return None

        if not self.kernel_info.is_running:
            self.ui.log(f'Not probing for precompiled kernel interfaces since the target kernel {self.kernel_info.name} is not the running one.')
            return None

        bundle = self.find_match(
            self.search_roots(package, search_path),
            expected_artifact_names(package.modules),
            self.kernel_info.proc_version,
            package.version,
        )

        if bundle is not None and self.expert:
            if not self.ui.yes_no(f'A precompiled kernel interface for the kernel "{bundle.description}" has been found. Would you like to use this? (answering "no" will require the installer to compile the interface)', True):
                bundle = None

        if bundle is None:
            self.ui.message('No precompiled kernel interface was found to match your kernel; this means that the installer will need to compile a new kernel interface.')
        else:
            self.ui.log(f'Using precompiled kernel interface: {bundle.path}')

        return bundle

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
