#!/usr/bin/python
# -*- coding: utf-8 -*-
# pylint: disable=line-too-long, broad-exception-caught

# Copyright: (c) 2025, Haydn Evans
# Apache License, Version 2.0 (see LICENSE or http://www.apache.org/licenses/LICENSE-2.0)

"""
Ansible module for managing privileges in PostgreSQL.

This module keeps the privileges a role holds on PostgreSQL objects
(databases, schemas, tables, sequences, functions, types, foreign data
wrappers and foreign servers) equal to a declared set. The declared set is
either an explicit list or ALL, whose meaning depends on the object type and
on the server version (tables gained MAINTAIN in PostgreSQL 17).

Drift is detected by comparing the granted set to the declared set; when they
differ the role's privileges are revoked and granted again in one transaction.
"""

import traceback
from ansible.module_utils.basic import AnsibleModule, missing_required_lib
from ansible.module_utils.common.text.converters import to_native
from ansible_collections.haydnjevans.postgresql.plugins.module_utils.postgresql import (
    PostgreSQLHelper,
    HAS_PSYCOPG2,
    POSTGRESQL_IMP_ERR,
    postgresql_common_argument_spec,
    quote_ident,
)
from ansible_collections.haydnjevans.postgresql.plugins.module_utils.privileges import (
    OBJECT_TYPES,
    ALL_PRIVILEGES,
    privileges_equal,
    validate_privileges,
)

ANSIBLE_METADATA = {
    "metadata_version": "1.1",
    "status": ["preview"],
    "supported_by": "community",
}

DOCUMENTATION = r"""
---
module: postgresql_grant
short_description: Manage PostgreSQL privileges
description:
  - Keep the privileges of a role on PostgreSQL objects equal to a declared list
  - Privileges not in the list are revoked, missing ones are granted
  - C(ALL) expands to every privilege of the object type for the server version
options:
  role:
    description:
      - Role receiving the privileges, or C(public)
    required: true
    type: str
  database:
    description:
      - Database to connect to, and the target when I(object_type=database)
    required: true
    type: str
  object_type:
    description:
      - Type of object the privileges apply to
    required: true
    choices: ["database", "foreign_data_wrapper", "foreign_server", "function", "schema", "sequence", "table", "type"]
    type: str
  schema:
    description:
      - Schema of the objects, and the target when I(object_type=schema)
      - Required for schema, table, sequence, function and type
    type: str
  objects:
    description:
      - Objects to manage privileges on
      - For tables and sequences an empty list means every object of that kind in I(schema)
      - Required for functions, types, foreign data wrappers and foreign servers
      - Ignored for databases and schemas
    type: list
    elements: str
    default: []
  privileges:
    description:
      - Privileges the role must hold, or C(ALL)
      - C(ALL) cannot be combined with other privileges
      - Required when I(state=present)
    type: list
    elements: str
  with_grant_option:
    description:
      - Whether the role may grant the privileges to others
    type: bool
    default: false
  state:
    description:
      - C(present) makes the granted privileges equal to I(privileges)
      - C(absent) revokes every privilege of the role on the objects
    default: present
    choices: ["present", "absent"]
    type: str
  host:
    description:
      - Database host address
    default: localhost
    type: str
  port:
    description:
      - Database port number
    default: 5432
    type: int
  user:
    description:
      - Database username
    default: postgres
    type: str
  password:
    description:
      - Database user password
    type: str
  ssl_mode:
    description:
      - SSL connection mode
    default: prefer
    choices: ["disable", "allow", "prefer", "require", "verify-ca", "verify-full"]
    type: str
  ssl_cert:
    description:
      - Path to client certificate file
    type: path
  ssl_key:
    description:
      - Path to client private key file
    type: path
  ssl_rootcert:
    description:
      - Path to CA certificate file
    type: path
  connect_timeout:
    description:
      - Database connection timeout in seconds
    default: 30
    type: int
  expected_version:
    description:
      - Server version assumed when it cannot be detected
    default: "9.0.0"
    type: str
requirements:
  - psycopg2
author:
  - "Haydn Evans (@haydn-j-evans)"
"""

EXAMPLES = r"""
# Grant every table privilege in a schema, MAINTAIN included on PostgreSQL 17
- name: Grant ALL on tables
  postgresql_grant:
    role: app_owner
    database: app
    schema: public
    object_type: table
    privileges:
      - ALL

# Read-only access on two tables
- name: Grant SELECT on selected tables
  postgresql_grant:
    role: reporting
    database: app
    schema: public
    object_type: table
    objects:
      - orders
      - customers
    privileges:
      - SELECT

# Allow connections to a database
- name: Grant CONNECT on a database
  postgresql_grant:
    role: reporting
    database: app
    object_type: database
    privileges:
      - CONNECT

# Revoke everything PUBLIC holds on a schema
- name: Revoke schema privileges from PUBLIC
  postgresql_grant:
    role: public
    database: app
    schema: public
    object_type: schema
    state: absent
"""

RETURN = r"""
changed:
  description: Whether any privilege changes were made
  returned: always
  type: bool
  sample: true
queries:
  description: List of executed queries for privilege management
  returned: always
  type: list
  sample: ['REVOKE ALL PRIVILEGES ON TABLE "public"."orders" FROM "reporting"', 'GRANT SELECT ON TABLE "public"."orders" TO "reporting"']
server_version:
  description: Detected PostgreSQL server version
  returned: success
  type: str
  sample: "17.2"
privileges:
  description: Privileges held by the role on every target before changes
  returned: success
  type: dict
  sample: {"orders": ["SELECT", "UPDATE"], "customers": []}
"""

# Object types targeted through the database or schema parameter instead of objects
SINGLE_TARGET_TYPES = ["database", "schema"]

# Object types whose empty objects list means every object of the schema
LISTABLE_TYPES = ["table", "sequence"]

SQL_KEYWORDS = {
    "database": "DATABASE",
    "schema": "SCHEMA",
    "table": "TABLE",
    "sequence": "SEQUENCE",
    "function": "FUNCTION",
    "type": "TYPE",
    "foreign_data_wrapper": "FOREIGN DATA WRAPPER",
    "foreign_server": "FOREIGN SERVER",
}


def normalize_privileges(privileges):
    """Upper-case and deduplicate the requested privileges"""
    return sorted({privilege.strip().upper() for privilege in privileges or []})


def role_reference(role):
    if role.lower() == "public":
        return "PUBLIC"
    return quote_ident(role)


def object_reference(object_type, object_name, schema=None):
    """
    Build the ON clause target of a GRANT or REVOKE statement

    Example: object_reference('table', 'users', 'public') returns 'TABLE "public"."users"'
    """
    if object_type in ("table", "sequence", "function", "type"):
        name = "%s.%s" % (quote_ident(schema), quote_ident(object_name))
    else:
        name = quote_ident(object_name)
    return "%s %s" % (SQL_KEYWORDS[object_type], name)


def resolve_targets(module, helper, object_type, database, schema, objects):
    """
    Work out the objects whose privileges are managed

    Fails the module when a named object does not exist.

    Returns:
        list: Object names
    """
    if object_type == "database":
        targets = [database]
    elif object_type == "schema":
        targets = [schema]
    elif objects:
        targets = list(objects)
    elif object_type in LISTABLE_TYPES:
        targets = helper.list_relations(object_type, schema)
        module.debug(f"Managing every {object_type} in schema {schema}: {targets}")
        return targets
    else:
        module.fail_json(msg=f"objects is required for {object_type} privileges")
        return []

    for target in targets:
        if not helper.object_exists(object_type, target, schema):
            module.fail_json(msg=f"{object_type.capitalize()} '{target}' does not exist")

    return targets


def check_privileges_changes(
    module,
    helper,
    state,
    object_type,
    targets,
    schema,
    role,
    privileges,
    with_grant_option,
    version,
):
    """
    Find the targets whose privileges differ from the requested ones.

    Args:
        module: The Ansible module instance
        helper: The PostgreSQLHelper instance
        state: Either 'present' or 'absent'
        object_type: Type of object (database, table, etc.)
        targets: Object names to check
        schema: Schema name for schema-qualified objects
        role: Role whose privileges are checked
        privileges: Requested privileges
        with_grant_option: Whether grant option is requested
        version: Server version

    Returns:
        tuple: (targets needing changes, current privileges by target)
    """
    drifted = []
    current_privileges = {}

    for target in targets:
        granted = helper.get_object_privileges(object_type, role, target, schema)
        current_privileges[target] = sorted(granted)

        module.debug(f"Current privileges for {role} on {object_type} {target}: {granted}")
        module.debug(f"Requested privileges: {privileges}, grant option: {with_grant_option}")

        if state == "absent":
            if granted:
                drifted.append(target)
            continue

        if not privileges_equal(set(granted), privileges, object_type, version):
            module.debug(f"Privileges of {role} on {target} differ from the requested ones")
            drifted.append(target)
        elif any(grantable != with_grant_option for grantable in granted.values()):
            module.debug(f"Grant option of {role} on {target} differs from the requested one")
            drifted.append(target)

    return drifted, current_privileges


def build_privilege_queries(state, object_type, targets, schema, role, privileges, with_grant_option):
    """
    Generate the statements bringing the targets to the requested state

    Privileges are revoked entirely before the requested ones are granted, so
    that extra privileges and stale grant options disappear.
    """
    queries = []
    grantee = role_reference(role)

    for target in targets:
        ref = object_reference(object_type, target, schema)
        queries.append(f"REVOKE ALL PRIVILEGES ON {ref} FROM {grantee}")

        if state == "present" and privileges:
            privilege_str = "ALL PRIVILEGES" if privileges == [ALL_PRIVILEGES] else ", ".join(privileges)
            query = f"GRANT {privilege_str} ON {ref} TO {grantee}"
            if with_grant_option:
                query += " WITH GRANT OPTION"
            queries.append(query)

    return queries


def main():
    """
    Main entry point for the PostgreSQL privilege management module.

    Validates the requested privileges against the object type, connects to
    the server, probes its version, compares the privileges the role holds on
    every target with the requested ones and issues REVOKE/GRANT statements
    for the targets that drifted. In check mode the statements are only
    reported.

    Returns:
        dict: Result object with the 'changed' flag, the queries, the server
              version and the privileges found before any change
    """
    argument_spec = postgresql_common_argument_spec()
    argument_spec.update(
        role=dict(type="str", required=True),
        database=dict(type="str", required=True),
        object_type=dict(type="str", required=True, choices=OBJECT_TYPES),
        schema=dict(type="str"),
        objects=dict(type="list", elements="str", default=[]),
        privileges=dict(type="list", elements="str"),
        with_grant_option=dict(type="bool", default=False),
        state=dict(type="str", default="present", choices=["present", "absent"]),
    )

    module = AnsibleModule(
        argument_spec=argument_spec,
        supports_check_mode=True,
        required_together=[["ssl_cert", "ssl_key"]],
        required_if=[
            ["state", "present", ["privileges"]],
            ["object_type", "schema", ["schema"]],
            ["object_type", "table", ["schema"]],
            ["object_type", "sequence", ["schema"]],
            ["object_type", "function", ["schema"]],
            ["object_type", "type", ["schema"]],
        ],
    )

    if not HAS_PSYCOPG2:
        module.fail_json(msg=missing_required_lib("psycopg2"), exception=POSTGRESQL_IMP_ERR)

    state = module.params["state"]
    role = module.params["role"]
    database_name = module.params["database"]
    object_type = module.params["object_type"]
    schema = module.params["schema"]
    objects = module.params["objects"]
    with_grant_option = module.params["with_grant_option"]
    privileges = normalize_privileges(module.params["privileges"]) if state == "present" else []

    if state == "present" and not privileges:
        module.fail_json(msg="privileges must not be empty, use state=absent to revoke everything")

    try:
        validate_privileges(object_type, privileges)
    except ValueError as e:
        module.fail_json(msg=to_native(e))

    if object_type in SINGLE_TARGET_TYPES and objects:
        module.warn(f"objects is ignored for {object_type} privileges")

    result = {
        "changed": False,
        "queries": [],
    }

    helper = PostgreSQLHelper(module)

    try:
        helper.connect()

        version = helper.get_version()
        result["server_version"] = str(version)

        try:
            validate_privileges(object_type, privileges, version)
        except ValueError as e:
            module.fail_json(msg=f"{to_native(e)} on PostgreSQL {version}")

        if role.lower() != "public" and not helper.role_exists(role):
            module.fail_json(msg=f"Role '{role}' does not exist")

        targets = resolve_targets(module, helper, object_type, database_name, schema, objects)

        drifted, current_privileges = check_privileges_changes(
            module,
            helper,
            state,
            object_type,
            targets,
            schema,
            role,
            privileges,
            with_grant_option,
            version,
        )
        result["privileges"] = current_privileges

        queries = build_privilege_queries(state, object_type, drifted, schema, role, privileges, with_grant_option)
        result["queries"] = queries

        if queries:
            result["changed"] = True
            if not module.check_mode:
                helper.execute_transaction(queries)

    except Exception as e:
        module.fail_json(msg=to_native(e), exception=traceback.format_exc())
    finally:
        helper.close()

    module.exit_json(**result)


if __name__ == "__main__":
    main()
