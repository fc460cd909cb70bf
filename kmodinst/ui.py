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
Operator interface used by the installer to report progress and ask
questions.

The installer never talks to a terminal directly. Frontends implement
:class:`UserInterface`, and every message also ends up in the standard
:mod:`logging` hierarchy so that a log file always contains the full story of
an installation, including the decisions taken by the operator.
"""

import abc
import logging

from kmodinst.utils import Loggable


class UserInterface(Loggable, abc.ABC):
    """
    Abstract operator interface.

    :param expert: If ``True``, :meth:`expert` messages are shown at INFO
        level rather than DEBUG.
    :type expert: bool
    """
    def __init__(self, expert=False):
        self.expert_mode = expert

    @abc.abstractmethod
    def _ask_yes_no(self, question, default):
        pass

    @abc.abstractmethod
    def _ask_input(self, prompt, default):
        pass

    @abc.abstractmethod
    def _ask_choice(self, question, choices, default):
        pass

    def yes_no(self, question, default):
        """
        Ask a binary question.

        :param question: Question displayed to the operator.
        :type question: str

        :param default: Answer used when the operator does not give one.
        :type default: bool

        :returns: The answer as a boolean.
        """
        answer = bool(self._ask_yes_no(question, default))
        self.logger.info(f'{question} -> {"yes" if answer else "no"}')
        return answer

    def get_input(self, prompt, default=None):
        """
        Ask the operator for a free form string.

        :returns: The answer, or ``default``.
        """
        answer = self._ask_input(prompt, default)
        self.logger.info(f'{prompt} -> {answer}')
        return answer

    def multiple_choice(self, question, choices, default=0):
        """
        Ask the operator to choose one entry in ``choices``.

        :param choices: Sequence of strings describing each choice.
        :type choices: list(str)

        :param default: Index of the default choice.
        :type default: int

        :returns: The index of the chosen entry.
        """
        if not choices:
            raise ValueError('No choice to offer')

        idx = self._ask_choice(question, list(choices), default)
        if not 0 <= idx < len(choices):
            raise ValueError(f'Invalid choice index: {idx}')
        self.logger.info(f'{question} -> {choices[idx]}')
        return idx

    def message(self, msg):
        self.logger.info(msg)

    def warn(self, msg):
        self.logger.warning(msg)

    def error(self, msg):
        self.logger.error(msg)

    def log(self, msg):
        self.logger.debug(msg)

    def expert(self, msg):
        """
        Message only relevant to expert operators.
        """
        level = logging.INFO if self.expert_mode else logging.DEBUG
        self.logger.log(level, msg)

    def status_begin(self, title):
        self.logger.debug(f'{title}: started')

    def status_update(self, percent, msg=None):
        # Progress is purely informative, and very chatty
        pass

    def status_end(self, msg):
        self.logger.debug(msg)


class NonInteractiveUI(UserInterface):
    """
    Operator interface answering every question with its default answer.

    This is the behavior expected when running unattended: the installer
    still documents every decision in the logs.
    """
    def _ask_yes_no(self, question, default):
        return default

    def _ask_input(self, prompt, default):
        return default

    def _ask_choice(self, question, choices, default):
        return default

    def status_update(self, percent, msg=None):
        msg = f': {msg}' if msg else ''
        self.logger.debug(f'{percent:.0%}{msg}')

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
