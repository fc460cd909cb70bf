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
Configuration management with named, prioritized sources.

A configuration class declares the allowed keys with a ``STRUCTURE`` made of
:class:`KeyDesc` (leaf keys) and :class:`LevelKeyDesc` (nested levels). Values
are then added as named sources (``user``, ``env``, ``default`` ...) and the
source with the highest priority wins when looking up a key. This allows
knowing where a value came from, which matters when an explicit choice must be
honored even if it turns out to be invalid.
"""

import abc
import copy
import re
from collections.abc import Mapping

from ruamel.yaml import YAML

from kmodinst.utils import Loggable


class ConfigKeyError(KeyError):
    """
    Exception raised when a key is not found in the config instance.
    """
    def __init__(self, msg, key=None, src=None):
        # pylint: disable=super-init-not-called
        self.key = key
        self.src = src
        self.msg = msg

    def __str__(self):
        return self.msg


class KeyDescBase(abc.ABC):
    """
    Base class for configuration files key descriptor.

    This allows defining the structure of the configuration file, in order
    to sanitize user input and generate help snippets used in various places.
    """
    INDENTATION = 4 * ' '
    _VALID_NAME_PATTERN = r'^[a-zA-Z0-9-<>]+$'

    def __init__(self, name, help):
        # pylint: disable=redefined-builtin

        self._check_name(name)
        self.name = name
        self.help = help
        self.parent = None

    @classmethod
    def _check_name(cls, name):
        if not re.match(cls._VALID_NAME_PATTERN, name):
            raise ValueError(f'Invalid key name "{name}". Key names must match: {cls._VALID_NAME_PATTERN}')

    @property
    def qualname(self):
        """
        "Qualified" name of the key.

        This is a slash-separated path in the config file from the root to that
        key:
        <parent qualname>/<name>
        """
        return '/'.join(self.path)

    @property
    def path(self):
        """
        Path in the config file from the root to that key.
        """
        curr = self
        l = []
        while curr is not None:
            l.append(curr.name)
            curr = curr.parent
        return l[::-1]

    @abc.abstractmethod
    def get_help(self, style=None):
        """
        Get a help message describing the key.
        """

    @abc.abstractmethod
    def validate_val(self, val):
        """
        Validate a value to be used for that key.

        :raises TypeError: When the value has the wrong type
        :raises ValueError: If the value does not comply with some other
            constraints. Note that constraints should ideally be encoded in the
            type itself, to make help message as straightforward as possible.
        """


class KeyDesc(KeyDescBase):
    """
    Key descriptor describing a leaf key in the configuration.

    :param name: Name of the key

    :param help: Short help message describing the use of that key

    :param classinfo: sequence of allowed types for that key. As a special
        case, `None` is allowed in that sequence of types, even though it is
        not strictly speaking a type.
    :type classinfo: collections.abc.Sequence
    """

    def __init__(self, name, help, classinfo):
        # pylint: disable=redefined-builtin
        super().__init__(name=name, help=help)
        # isinstance's style classinfo
        self.classinfo = tuple(classinfo)

    def validate_val(self, val):
        """
        Check that the value is an instance of one of the type specified in the
        ``self.classinfo``.

        If the value is not an instance of any of these types, then a
        :exc:`TypeError` is raised corresponding to the first type in the
        tuple, which is assumed to be the main one.
        """
        def check(cls):
            if cls is None:
                return val is None
            # bool is a subclass of int, but "True" is never a valid
            # concurrency level
            elif cls is int and isinstance(val, bool):
                return False
            else:
                return isinstance(val, cls)

        if not any(map(check, self.classinfo)):
            classinfo = ' or '.join(
                'None' if cls is None else cls.__qualname__
                for cls in self.classinfo
            )
            raise TypeError(f'Key "{self.qualname}" is an instance of {val.__class__.__qualname__}, but should be instance of {classinfo}. Help: {self.help}', self.qualname)

    def get_help(self, style=None):
        classinfo = ' or '.join(
            'None' if cls is None else cls.__qualname__
            for cls in self.classinfo
        )
        return f'|- {self.name} ({classinfo}): {self.help}.'


class LevelKeyDesc(KeyDescBase, Mapping):
    """
    Key descriptor defining a hierarchical level in the configuration.

    :param name: name of the key in the configuration

    :param help: Short help describing the use of the keys inside that level

    :param children: collections.abc.Sequence of :class:`KeyDescBase` defining
        the allowed keys under that level
    :type children: collections.abc.Sequence
    """

    def __init__(self, name, help, children):
        # pylint: disable=redefined-builtin
        super().__init__(name=name, help=help)
        self.children = children

        # Fixup parent for easy nested declaration
        for key_desc in self.children:
            key_desc.parent = self

    @property
    def _key_map(self):
        return {
            key_desc.name: key_desc
            for key_desc in self.children
        }

    def __iter__(self):
        return iter(self._key_map)

    def __len__(self):
        return len(self.children)

    def __getitem__(self, key):
        self.check_allowed_key(key)
        return self._key_map[key]

    def check_allowed_key(self, key):
        """
        Checks that a given key is allowed under that levels
        """
        try:
            self._key_map[key]
        except KeyError:
            try:
                closest_match, = re.findall(fr'\b{re.escape(key)}\w*', ' '.join(self._key_map))
            except ValueError:
                closest_match = None
            suggestion = f' (did you mean "{closest_match}" ?)' if closest_match else ''
            # pylint: disable=raise-missing-from
            raise ConfigKeyError(
                f'Key "{key}" is not allowed in {self.qualname}{suggestion}',
                key=key,
            )

    def validate_val(self, val):
        """
        Validate a mapping to be used as a configuration source.
        """
        if not isinstance(val, Mapping):
            raise TypeError(f'Configuration of "{self.qualname}" must be a mapping, not {val.__class__.__qualname__}')

        for key, key_val in val.items():
            self[key].validate_val(key_val)

    def get_help(self, style=None):
        idt = self.INDENTATION
        help_ = '\n'.join(
            idt + line
            for key_desc in self.children
            for line in key_desc.get_help(style=style).splitlines()
        )
        return f'+- {self.name}: {self.help}\n{help_}'


class TopLevelKeyDesc(LevelKeyDesc):
    """
    Top-level key descriptor, which defines the top-level key to use in the
    configuration files.

    This top-level key is omitted in all interfaces except for the
    configuration file, since it only reflects the configuration class
    """
    @property
    def levels(self):
        return [self.name]


class MultiSrcConf(Loggable, Mapping):
    """
    Base class providing layered configuration management.

    :param conf: collections.abc.Mapping to initialize the configuration with.
    :type conf: collections.abc.Mapping

    :param src: Name of the source added when passing ``conf``
    :type src: str

    :param add_default_src: Add ``DEFAULT_SRC`` as the lowest priority source.
    :type add_default_src: bool

    The class inherits from :class:`collections.abc.Mapping`, which means it
    can be used like a readonly dict. Writing to it is handled by a different
    API that allows naming the source of values that are stored.

    Each leaf key can hold different values coming from different named
    sources. By default, the last added source will have the highest priority
    and will be served when looking up that key.
    """

    @property
    @abc.abstractmethod
    def STRUCTURE(self):
        """
        Class attribute defining the structure of the configuration file, as a
        instance of :class:`TopLevelKeyDesc`
        """

    DEFAULT_SRC = {}
    """
    Source added automatically using :meth:`add_src` under the name 'default'
    when instances are built.
    """

    _YAML = YAML(typ='safe')

    def __init__(self, conf=None, src='user', add_default_src=True):
        self._nested_init(
            structure=self.STRUCTURE,
            src_prio=[],
        )
        if conf is not None:
            self.add_src(src, conf)

        # Give some preset in the the lowest prio source
        if self.DEFAULT_SRC and add_default_src:
            self.add_src('default', self.DEFAULT_SRC, fallback=True)

    def _nested_init(self, structure, src_prio):
        # pylint: disable=attribute-defined-outside-init
        self._structure = structure
        # The priority list is shared with all the sublevels
        self._src_prio = src_prio
        self._key_map = {}
        self._sublevel_map = {
            key: self._nested_new(key_desc, src_prio)
            for key, key_desc in structure.items()
            if isinstance(key_desc, LevelKeyDesc)
        }

    @classmethod
    def _nested_new(cls, structure, src_prio):
        new = cls.__new__(cls)
        new._nested_init(structure, src_prio)
        return new

    @classmethod
    def get_help(cls, *args, **kwargs):
        return cls.STRUCTURE.get_help(*args, **kwargs)

    def add_src(self, src, conf, filter_none=False, fallback=False):
        """
        Add a source of configuration.

        :param src: Name of the source to add
        :type src: str

        :param conf: Nested mapping of key/values to overlay
        :type conf: collections.abc.Mapping

        :param filter_none: Ignores the keys that have a ``None`` value. That
            simplifies the creation of the mapping, by having keys always
            present. That should not be used if ``None`` value for a key is
            expected, as opposit to not having that key set at all.
        :type filter_none: bool

        :param fallback: If True, the source will be added as a fallback, which
            means at the end of the priority list. By default, the source will
            have the highest priority.
        :type fallback: bool
        """
        self._add_src(src, conf, filter_none=filter_none)

        if src in self._src_prio:
            self._src_prio.remove(src)

        if fallback:
            self._src_prio.append(src)
        else:
            self._src_prio.insert(0, src)

        self.logger.debug(f'Added configuration source "{src}" to {self._structure.qualname}, priority: {", ".join(self._src_prio)}')

    def _add_src(self, src, conf, filter_none=False):
        conf = {} if conf is None else conf
        if isinstance(conf, MultiSrcConf):
            conf = conf.to_map()
        elif not isinstance(conf, Mapping):
            raise TypeError(f'Configuration of "{self._structure.qualname}" must be a mapping, not {conf.__class__.__qualname__}')

        # Filter-out None values, so they won't override actual data from
        # another source
        if filter_none:
            conf = {
                k: v for k, v in conf.items()
                if v is not None
            }

        # Only validate the leaves at that level, sublevels will take care of
        # their own keys
        self._structure.validate_val({
            k: v for k, v in conf.items()
            if not isinstance(self._structure[k], LevelKeyDesc)
        })

        for key, val in conf.items():
            key_desc = self._structure[key]
            if isinstance(key_desc, LevelKeyDesc):
                self._sublevel_map[key]._add_src(src, val, filter_none=filter_none)
            else:
                self._key_map.setdefault(key, {})[src] = val

    def _get_leaf_desc(self, key):
        key_desc = self._structure[key]
        if isinstance(key_desc, LevelKeyDesc):
            raise ValueError(f'Key "{key_desc.qualname}" is a level, not a leaf key')
        return key_desc

    def resolve_src(self, key):
        """
        Get the source name that will be used to serve the value of ``key``.

        :raises ConfigKeyError: if the key is not set by any source.
        """
        key_desc = self._get_leaf_desc(key)
        src_map = self._key_map.get(key, {})
        for src in self._src_prio:
            if src in src_map:
                return src

        raise ConfigKeyError(
            f'Key "{key_desc.qualname}" is not set in any source',
            key=key_desc.qualname,
        )

    def get_src_map(self, key):
        """
        Get a mapping of all sources for the given ``key``, in priority order
        (first item is the highest priority source).
        """
        self._get_leaf_desc(key)
        src_map = self._key_map.get(key, {})
        return {
            src: src_map[src]
            for src in self._src_prio
            if src in src_map
        }

    def __getitem__(self, key):
        key_desc = self._structure[key]
        if isinstance(key_desc, LevelKeyDesc):
            return self._sublevel_map[key]
        else:
            src = self.resolve_src(key)
            return copy.deepcopy(self._key_map[key][src])

    def _is_set(self, key):
        if key in self._sublevel_map:
            return bool(self._sublevel_map[key])
        else:
            return bool(self._key_map.get(key))

    def __iter__(self):
        return (
            key
            for key in self._structure
            if self._is_set(key)
        )

    def __len__(self):
        return sum(1 for _ in self)

    def __bool__(self):
        return any(map(self._is_set, self._structure))

    def to_map(self):
        """
        Export the effective configuration as a nested mapping of plain
        values.
        """
        return {
            key: val.to_map() if isinstance(val, MultiSrcConf) else val
            for key, val in self.items()
        }

    @classmethod
    def from_map(cls, mapping, add_default_src=True):
        """
        Create a new configuration instance, using the output of
        :meth:`to_map`.
        """
        return cls(mapping, add_default_src=add_default_src)

    @classmethod
    def from_yaml_map(cls, path, add_default_src=True):
        """
        Load the configuration from a YAML file. The content is hosted under
        the top-level key specified in ``STRUCTURE``.

        :param path: Path to the YAML file
        :type path: str

        :param add_default_src: Add a default source if available for that
            class.
        :type add_default_src: bool
        """
        toplevel_key, = cls.STRUCTURE.levels
        with open(path) as f:
            mapping = cls._YAML.load(f)

        if not isinstance(mapping, Mapping):
            raise ValueError(f'Top-level object is expected to be a mapping but got: {mapping.__class__.__qualname__}')

        try:
            data = mapping[toplevel_key]
        except KeyError:
            # pylint: disable=raise-missing-from
            raise ConfigKeyError(
                f'Top-level key "{toplevel_key}" not found in {path}',
                key=toplevel_key,
            )

        return cls.from_map(data or {}, add_default_src=add_default_src)

    def to_yaml_map(self, path):
        """
        Write the effective configuration to a YAML file, under the
        top-level key specified in ``STRUCTURE``.

        :param path: Path to the file to write to.
        :type path: str
        """
        toplevel_key, = self.STRUCTURE.levels
        with open(path, 'w') as f:
            self._YAML.dump({toplevel_key: self.to_map()}, f)

    def __str__(self):
        return str(self.to_map())

    def __repr__(self):
        return f'{self.__class__.__qualname__}({self.to_map()!r})'


class SimpleMultiSrcConf(MultiSrcConf):
    """
    Like :class:`MultiSrcConf`, with a more straightforward intended use.

    Subclasses only need to provide ``STRUCTURE`` and optionally
    ``DEFAULT_SRC``. Helper constructors such as ``from_env()`` are expected
    to add their own named source on top of the ``default`` one.
    """
    pass

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
