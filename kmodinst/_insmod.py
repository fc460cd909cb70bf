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
Kernel module insertion and removal.

The kernel reports the reason of a failed insertion with an errno value, which
is what the load test classification relies on. The syscall backend gets it
directly, the command backend has to infer it from the error message of
``insmod``.
"""

import abc
import errno
import mmap
import os
import shlex
import subprocess

from cffi import FFI

from kmodinst.utils import Loggable, pretty_cmd

UNKNOWN_ERRNO = errno.EIO
"""
Error code used when the cause of a failure cannot be determined.
"""


class ModuleInserter(Loggable, abc.ABC):
    """
    Insert kernel modules in the running kernel.
    """

    @abc.abstractmethod
    def insert(self, path, params=''):
        """
        Insert the kernel module at ``path``.

        :param path: Path to the ``.ko`` file.
        :type path: str

        :param params: Module parameters, space separated ``name=value``.
        :type params: str

        :returns: ``0`` on success, an errno value otherwise.
        """

    @abc.abstractmethod
    def remove(self, name):
        """
        Remove the kernel module ``name``.

        :returns: ``0`` on success, an errno value otherwise.
        """


class SyscallModuleInserter(ModuleInserter):
    """
    Call ``init_module()`` and ``delete_module()`` through the C library.

    :raises AttributeError: if the C library does not provide the functions.
    """
    def __init__(self):
        ffi = FFI()
        ffi.cdef('''
        int init_module(void *module_image, unsigned long len, const char *param_values);
        int delete_module(const char *name, unsigned int flags);
        ''')
        libc = ffi.dlopen(None)

        # Symbols are resolved lazily, make sure they are there
        libc.init_module
        libc.delete_module

        self._ffi = ffi
        self._libc = libc

    def insert(self, path, params=''):
        ffi = self._ffi
        with open(path, 'rb') as f:
            try:
                mapping = mmap.mmap(f.fileno(), 0, access=mmap.ACCESS_READ)
            except ValueError:
                # Empty file
                return errno.ENOEXEC

            with mapping:
                buf = ffi.from_buffer(mapping)
                try:
                    ret = self._libc.init_module(buf, len(mapping), params.encode('utf-8'))
                    err = ffi.errno
                finally:
                    ffi.release(buf)

        if ret:
            self.logger.debug(f'init_module({path}) failed: {errno.errorcode.get(err, err)}')
            return err
        return 0

    def remove(self, name):
        ret = self._libc.delete_module(name.encode('utf-8'), os.O_NONBLOCK)
        if ret:
            err = self._ffi.errno
            self.logger.debug(f'delete_module({name}) failed: {errno.errorcode.get(err, err)}')
            return err
        return 0


def errno_from_message(msg):
    """
    Find the error code whose description appears in ``msg``, or
    :data:`UNKNOWN_ERRNO`.
    """
    # Longest descriptions first, since some are substrings of others
    codes = sorted(
        errno.errorcode,
        key=lambda code: len(os.strerror(code)),
        reverse=True,
    )
    for code in codes:
        if os.strerror(code) in msg:
            return code
    return UNKNOWN_ERRNO


class CommandModuleInserter(ModuleInserter):
    """
    Use the ``insmod`` and ``rmmod`` commands.
    """
    def __init__(self, insmod='insmod', rmmod='rmmod'):
        self.insmod = insmod
        self.rmmod = rmmod

    def _run(self, cmd):
        logger = self.logger
        logger.debug(f'Running: {pretty_cmd(cmd)}')
        try:
            res = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                universal_newlines=True,
                errors='replace',
            )
        except FileNotFoundError as e:
            logger.debug(f'Could not run {cmd[0]}: {e}')
            return errno.ENOENT

        if res.returncode:
            logger.debug(f'{pretty_cmd(cmd)} failed: {res.stdout}')
            return errno_from_message(res.stdout)
        return 0

    def insert(self, path, params=''):
        return self._run([self.insmod, path, *shlex.split(params)])

    def remove(self, name):
        return self._run([self.rmmod, name])


def select_inserter():
    """
    Choose the insertion backend supported by this system.
    """
    logger = ModuleInserter.get_logger()
    try:
        inserter = SyscallModuleInserter()
    except (OSError, AttributeError) as e:
        logger.debug(f'init_module() not available, using insmod: {e}')
        return CommandModuleInserter()
    else:
        logger.debug('Using init_module() to insert kernel modules')
        return inserter

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
