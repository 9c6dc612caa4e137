#!/usr/bin/python
# -*- coding: utf-8 -*-
# pylint: disable=line-too-long, broad-exception-caught

# Copyright: (c) 2025, Haydn Evans
# Apache License, Version 2.0 (see LICENSE or http://www.apache.org/licenses/LICENSE-2.0)

"""
Ansible module for gathering information from a PostgreSQL server.

Read-only counterpart of the grant module: it reports the server version,
the databases, schemas, tables, sequences and roles of the server, and what
ALL stands for on every object type for the detected version. The results
can feed the objects list of postgresql_grant.
"""

import traceback
from ansible.module_utils.basic import AnsibleModule, missing_required_lib
from ansible_collections.haydnjevans.postgresql.plugins.module_utils.postgresql import (
    PostgreSQLHelper,
    HAS_PSYCOPG2,
    POSTGRESQL_IMP_ERR,
    postgresql_common_argument_spec,
)
from ansible_collections.haydnjevans.postgresql.plugins.module_utils.privileges import (
    OBJECT_TYPES,
    expand_all_privileges,
)

ANSIBLE_METADATA = {
    "metadata_version": "1.1",
    "status": ["preview"],
    "supported_by": "community",
}

DOCUMENTATION = r"""
---
module: postgresql_info
short_description: Gather information about a PostgreSQL server
description:
  - Collect the server version, databases, schemas, tables, sequences and roles
  - Report the privileges ALL expands to for every object type
options:
  gather_subset:
    description:
      - Information to collect
    type: list
    elements: str
    default: ["all"]
    choices: ["all", "version", "databases", "schemas", "tables", "sequences", "roles", "privileges"]
  database:
    description:
      - Database to connect to; schemas, tables and sequences are read from it
    default: postgres
    type: str
  schema:
    description:
      - Only report tables and sequences of this schema
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
- name: Gather everything
  postgresql_info:
    database: app
  register: pg

- name: List the tables of a schema
  postgresql_info:
    database: app
    schema: reporting
    gather_subset:
      - tables
"""

RETURN = r"""
server_version:
  description: Detected PostgreSQL server version
  returned: when version is gathered
  type: str
  sample: "17.2"
databases:
  description: Non-template databases
  returned: when databases are gathered
  type: list
  sample: ["app", "postgres"]
schemas:
  description: User schemas of the database
  returned: when schemas are gathered
  type: list
  sample: ["public", "reporting"]
tables:
  description: Tables and views by schema
  returned: when tables are gathered
  type: dict
  sample: {"public": ["customers", "orders"]}
sequences:
  description: Sequences by schema
  returned: when sequences are gathered
  type: dict
  sample: {"public": ["orders_id_seq"]}
roles:
  description: Roles with their main attributes
  returned: when roles are gathered
  type: list
  sample: [{"name": "app", "superuser": false, "inherit": true, "can_login": true, "can_create_db": false}]
all_privileges:
  description: Privileges ALL expands to for every object type on this server
  returned: when privileges are gathered
  type: dict
  sample: {"schema": ["CREATE", "USAGE"]}
"""

SUBSETS = ["version", "databases", "schemas", "tables", "sequences", "roles", "privileges"]


def gather_relations(helper, object_type, schemas):
    """Map every schema to its relations of object_type, skipping empty schemas"""
    relations = {}
    for schema in schemas:
        names = helper.list_relations(object_type, schema)
        if names:
            relations[schema] = names
    return relations


def main():
    """
    Main entry point for the PostgreSQL information module.

    Connects to the server and collects the requested subsets of
    information. Nothing is ever changed, so the result always reports
    changed=False and check mode behaves like a normal run.

    Returns:
        dict: Result object with one key per gathered subset
    """
    module_args = postgresql_common_argument_spec()
    module_args.update(
        gather_subset=dict(
            type='list',
            elements='str',
            default=['all'],
            choices=['all'] + SUBSETS,
        ),
        database=dict(type='str', default='postgres'),
        schema=dict(type='str'),
    )

    module = AnsibleModule(
        argument_spec=module_args,
        supports_check_mode=True,
        required_together=[['ssl_cert', 'ssl_key']],
    )

    if not HAS_PSYCOPG2:
        module.fail_json(msg=missing_required_lib("psycopg2"), exception=POSTGRESQL_IMP_ERR)

    gather_subset = module.params['gather_subset']
    if 'all' in gather_subset:
        gather_subset = SUBSETS
    target_schema = module.params.get('schema')

    result = {'changed': False}

    db = PostgreSQLHelper(module)

    try:
        db.connect()

        if 'version' in gather_subset or 'privileges' in gather_subset:
            version = db.get_version()
            result['server_version'] = str(version)

        if 'databases' in gather_subset:
            databases_result = db.execute_query(
                "SELECT datname FROM pg_database WHERE NOT datistemplate ORDER BY datname"
            )
            result['databases'] = [row[0] for row in databases_result or []]

        schemas = []
        if set(gather_subset) & {'schemas', 'tables', 'sequences'}:
            if target_schema:
                if not db.schema_exists(target_schema):
                    module.fail_json(msg=f"Schema {target_schema} does not exist")
                schemas = [target_schema]
            else:
                schemas = db.list_schemas()

        if 'schemas' in gather_subset:
            result['schemas'] = schemas

        if 'tables' in gather_subset:
            result['tables'] = gather_relations(db, 'table', schemas)

        if 'sequences' in gather_subset:
            result['sequences'] = gather_relations(db, 'sequence', schemas)

        if 'roles' in gather_subset:
            roles_result = db.execute_query("""
                SELECT
                    rolname,
                    rolsuper,
                    rolinherit,
                    rolcanlogin,
                    rolcreatedb
                FROM
                    pg_roles
                WHERE
                    rolname NOT LIKE 'pg\\_%%'
                ORDER BY
                    rolname
            """)

            roles = []
            for role in roles_result or []:
                roles.append({
                    'name': role[0],
                    'superuser': role[1],
                    'inherit': role[2],
                    'can_login': role[3],
                    'can_create_db': role[4]
                })

            result['roles'] = roles

        if 'privileges' in gather_subset:
            result['all_privileges'] = {
                object_type: sorted(expand_all_privileges(object_type, version))
                for object_type in OBJECT_TYPES
            }

    except Exception as e:
        module.fail_json(msg=str(e), exception=traceback.format_exc())
    finally:
        db.close()

    module.exit_json(**result)


if __name__ == '__main__':
    main()
