#!/usr/bin/python
# -*- coding: utf-8 -*-

# Copyright: (c) 2025, Haydn Evans
# Apache License, Version 2.0 (see LICENSE or http://www.apache.org/licenses/LICENSE-2.0)

"""
Privilege reconciliation for PostgreSQL objects.

The ALL alias expands to a different privilege list depending on the object
type and on the server version. PRIVILEGE_RULES holds, for every object type,
a version-ordered list of (minimum version, privileges added) rules; the
expansion is the union of every rule that applies to the server version.
Supporting a new PostgreSQL release is a matter of appending a rule.
"""

from __future__ import absolute_import, division, print_function
__metaclass__ = type

from ansible.module_utils.compat.version import LooseVersion

ALL_PRIVILEGES = 'ALL'

PRIVILEGE_RULES = {
    'database': [
        (None, ('CONNECT', 'CREATE', 'TEMPORARY')),
    ],
    'schema': [
        (None, ('CREATE', 'USAGE')),
    ],
    'table': [
        (None, ('SELECT', 'INSERT', 'UPDATE', 'DELETE', 'TRUNCATE', 'REFERENCES', 'TRIGGER')),
        ('17', ('MAINTAIN',)),
    ],
    'sequence': [
        (None, ('USAGE', 'SELECT', 'UPDATE')),
    ],
    'function': [
        (None, ('EXECUTE',)),
    ],
    'type': [
        (None, ('USAGE',)),
    ],
    'foreign_data_wrapper': [
        (None, ('USAGE',)),
    ],
    'foreign_server': [
        (None, ('USAGE',)),
    ],
}

OBJECT_TYPES = sorted(PRIVILEGE_RULES)


def to_version(version):
    """Coerce a version string (or LooseVersion) to a LooseVersion"""
    if isinstance(version, LooseVersion):
        return version
    return LooseVersion(str(version))


def _rules_for(object_type):
    try:
        return PRIVILEGE_RULES[object_type]
    except KeyError:
        raise ValueError("Unknown object type '%s', expected one of: %s" % (object_type, ', '.join(OBJECT_TYPES)))


def expand_all_privileges(object_type, version):
    """
    Return the concrete privileges the ALL alias stands for.

    Args:
        object_type: One of OBJECT_TYPES
        version: Server version, as a string or LooseVersion

    Returns:
        frozenset of privilege names

    Raises:
        ValueError: if the object type is unknown
    """
    rules = _rules_for(object_type)
    server_version = to_version(version)

    expanded = set()
    for minimum, privileges in rules:
        if minimum is not None and server_version < LooseVersion(minimum):
            break
        expanded.update(privileges)
    return frozenset(expanded)


def allowed_privileges(object_type, version):
    """Privileges that may be requested on object_type, ALL included"""
    return expand_all_privileges(object_type, version) | {ALL_PRIVILEGES}


def _as_privilege_set(privileges):
    # A bare string is a single privilege token, not an iterable of characters
    if isinstance(privileges, str):
        return frozenset([privileges])
    return frozenset(privileges)


def _is_all(privileges):
    if ALL_PRIVILEGES not in privileges:
        return False
    if len(privileges) > 1:
        raise ValueError("ALL cannot be combined with other privileges: %s" % ', '.join(sorted(privileges)))
    return True


def privileges_equal(granted, desired, object_type, version):
    """
    Check whether the granted privileges match the desired ones.

    The desired privileges are either the single token ALL, expanded through
    PRIVILEGE_RULES for the object type and server version, or an explicit
    list compared verbatim. The comparison is set equality: a superset or a
    subset of the desired privileges is drift.

    Args:
        granted: Iterable of privileges currently held
        desired: Iterable of requested privileges, or the single token ALL
        object_type: One of OBJECT_TYPES
        version: Server version, as a string or LooseVersion

    Returns:
        bool: True when no GRANT or REVOKE is needed

    Raises:
        ValueError: on an unknown object type or ALL mixed with other tokens
    """
    wanted = _as_privilege_set(desired)
    if _is_all(wanted):
        wanted = expand_all_privileges(object_type, version)
    else:
        _rules_for(object_type)
    return _as_privilege_set(granted) == wanted


def validate_privileges(object_type, privileges, version=None):
    """
    Reject privileges that cannot be granted on object_type.

    Without a version every privilege any known release supports is accepted,
    so configuration can be checked before connecting.

    Raises:
        ValueError: describing the first problem found
    """
    if version is None:
        allowed = {ALL_PRIVILEGES}
        for _, added in _rules_for(object_type):
            allowed.update(added)
    else:
        allowed = allowed_privileges(object_type, version)

    requested = _as_privilege_set(privileges)
    _is_all(requested)

    invalid = sorted(requested - allowed)
    if invalid:
        raise ValueError(
            "Invalid privileges for %s: %s (allowed: %s)"
            % (object_type, ', '.join(invalid), ', '.join(sorted(allowed)))
        )
