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
Miscellaneous utilities that don't fit anywhere else.
"""

import inspect
import logging
import logging.config
import os
import os.path
import shlex


# Do not infer the value using __file__, since it will break later on when
# kmodinst package is installed in the site-package locations using pip, which
# are typically not writable.
KMODINST_HOME = os.getenv('KMODINST_HOME', os.path.abspath('.'))
"""
Folder used to resolve relative paths of configuration files, such as the
logging configuration.
"""


class _DummyLogger:
    def __getattr__(self, attr):
        x = getattr(logging, attr)
        if callable(x):
            return lambda *args, **kwargs: None
        else:
            return None


class Loggable:
    """
    A simple class for uniformly named loggers
    """

    # This cannot be memoized, as we behave differently based on the call stack
    @property
    def logger(self):
        """
        Convenience short-hand for ``self.get_logger()``.
        """
        return self.get_logger()

    @classmethod
    def get_logger(cls, suffix=None):
        if any (
            frame.function == '__del__'
            for frame in inspect.stack()
        ):
            return _DummyLogger()
        else:
            cls_name = cls.__name__
            module = inspect.getmodule(cls)
            if module:
                name = module.__name__ + '.' + cls_name
            else:
                name = cls_name
            if suffix:
                name += '.' + suffix
            return logging.getLogger(name)


def setup_logging(filepath='logging.conf', level=None):
    """
    Initialize logging used for all the kmodinst modules.

    :param filepath: the relative or absolute path of the logging
                     configuration to use. Relative path uses
                     :attr:`kmodinst.utils.KMODINST_HOME` as base folder.
    :type filepath: str

    :param level: Override the conf file and force logging level. Defaults to
        ``logging.INFO``.
    :type level: int or str
    """
    resolved_level = logging.INFO if level is None else level

    # Ensure basicConfig will have effects again by getting rid of the existing
    # handlers
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    # Capture the warnings as log entries
    logging.captureWarnings(True)

    if level is not None:
        log_format = '[%(asctime)s][%(name)s] %(levelname)s  %(message)s'
        logging.basicConfig(level=resolved_level, format=log_format)
    else:
        # Load the specified logfile using an absolute path
        if not os.path.isabs(filepath):
            filepath = os.path.join(KMODINST_HOME, filepath)

        # Set the level first, so the config file can override with more details
        logging.getLogger().setLevel(resolved_level)

        if os.path.exists(filepath):
            logging.config.fileConfig(filepath)
            logging.info(f'Using kmodinst logging configuration: {filepath}')
        else:
            raise FileNotFoundError(f'Logging configuration file not found: {filepath}')


def read_text_file(path, default=None):
    """
    Read the content of a (pseudo) text file.

    :param path: Path of the file to read.
    :type path: str or pathlib.Path

    :param default: Value returned if the file cannot be opened. If ``None``,
        the :exc:`OSError` is propagated.
    :type default: object
    """
    try:
        with open(path, 'r') as f:
            return f.read()
    except OSError:
        if default is None:
            raise
        else:
            return default


def pretty_cmd(cmd):
    """
    Format a command given as a list of arguments so that it can be copied in
    a shell.
    """
    if isinstance(cmd, str):
        return cmd
    else:
        return ' '.join(map(shlex.quote, map(str, cmd)))

# vim :set tabstop=4 shiftwidth=4 expandtab textwidth=80
