#! /usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
#
# Copyright (C) 2024, Arm Limited and contributors.
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

import itertools
import platform

from setuptools import setup, find_packages


plat = platform.system()
if plat != 'Linux':
    raise ValueError(f'Only Linux is supported, {plat} is unsupported')


with open('README.rst', 'r') as f:
    long_description = f.read()

with open("kmodinst/version.py") as f:
    version_globals = dict()
    exec(f.read(), version_globals)
    kmodinst_version = version_globals['__version__']

packages = find_packages(include=['kmodinst', 'kmodinst.*'])

extras_require={
    "dev": [
        "pytest",
        "build",
        "twine",
    ],
}

# "all" extra requires all to install all the optional dependencies
extras_require['all'] = sorted(set(
    itertools.chain.from_iterable(extras_require.values())
))

python_requires = '>= 3.8'

if __name__ == "__main__":

    setup(
        name='kmodinst',
        license='Apache License 2.0',
        version=kmodinst_version,
        maintainer='Arm Ltd.',
        packages=packages,
        description='Build, sign and load test kernel modules of driver packages',
        long_description=long_description,
        python_requires=python_requires,
        install_requires=[
            # Earlier versions have broken __slots__ deserialization
            "ruamel.yaml >= 0.16.6",

            # KernelVersion and TypedKernelConfig
            "devlib >= 1.3.4",

            "pyelftools", # To read the .modinfo section of kernel modules
            "cffi", # init_module and delete_module syscalls
        ],

        extras_require=extras_require,
        classifiers=[
            "Programming Language :: Python :: 3 :: Only",
            "License :: OSI Approved :: Apache Software License",
            # Kernel modules are only a thing on Linux
            "Operating System :: POSIX :: Linux",

            "Topic :: System :: Operating System Kernels :: Linux",
            "Topic :: System :: Installation/Setup",
            "Intended Audience :: System Administrators",
        ],
    )

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
