#!/usr/bin/python
# -*- coding: utf-8 -*-

# Copyright: (c) 2025, Haydn Evans
# Apache License, Version 2.0 (see LICENSE or http://www.apache.org/licenses/LICENSE-2.0)

from __future__ import absolute_import, division, print_function
__metaclass__ = type

import traceback
import re
import time
from ansible.module_utils.basic import missing_required_lib, env_fallback
from ansible.module_utils.compat.version import LooseVersion

POSTGRESQL_IMP_ERR = None
try:
    import psycopg2
    from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT
    HAS_PSYCOPG2 = True
except ImportError:
    POSTGRESQL_IMP_ERR = traceback.format_exc()
    HAS_PSYCOPG2 = False

DEFAULT_EXPECTED_VERSION = '9.0.0'

VERSION_PATTERN = r'PostgreSQL (?P<version>[0-9]+(?:\.[0-9]+)*)'
EXPECTED_VERSION_PATTERN = r'^(?P<version>[0-9]+(?:\.[0-9]+)*)$'

# pg_class.relkind values managed as each object type
RELKINDS = {
    'table': ('r', 'v', 'm', 'f', 'p'),
    'sequence': ('S',),
}

# Catalog, name column, ACL column, owner column and acldefault() code for every object type
ACL_CATALOGS = {
    'database': ('pg_database', 'datname', 'datacl', 'datdba', 'd'),
    'schema': ('pg_namespace', 'nspname', 'nspacl', 'nspowner', 'n'),
    'table': ('pg_class', 'relname', 'relacl', 'relowner', 'r'),
    'sequence': ('pg_class', 'relname', 'relacl', 'relowner', 's'),
    'function': ('pg_proc', 'proname', 'proacl', 'proowner', 'f'),
    'type': ('pg_type', 'typname', 'typacl', 'typowner', 'T'),
    'foreign_data_wrapper': ('pg_foreign_data_wrapper', 'fdwname', 'fdwacl', 'fdwowner', 'F'),
    'foreign_server': ('pg_foreign_server', 'srvname', 'srvacl', 'srvowner', 'S'),
}

# Object types living inside a schema, with the catalog column pointing at pg_namespace
SCHEMA_QUALIFIED = {
    'table': 'relnamespace',
    'sequence': 'relnamespace',
    'function': 'pronamespace',
    'type': 'typnamespace',
}


def postgresql_common_argument_spec():
    """Connection options shared by every module of the collection"""
    return dict(
        host=dict(type='str', default='localhost', fallback=(env_fallback, ['PGHOST'])),
        port=dict(type='int', default=5432, fallback=(env_fallback, ['PGPORT'])),
        user=dict(type='str', default='postgres', fallback=(env_fallback, ['PGUSER'])),
        password=dict(type='str', no_log=True, fallback=(env_fallback, ['PGPASSWORD'])),
        ssl_mode=dict(
            type='str',
            default='prefer',
            choices=['disable', 'allow', 'prefer', 'require', 'verify-ca', 'verify-full'],
            fallback=(env_fallback, ['PGSSLMODE']),
        ),
        ssl_cert=dict(type='path'),
        ssl_key=dict(type='path'),
        ssl_rootcert=dict(type='path'),
        connect_timeout=dict(type='int', default=30, fallback=(env_fallback, ['PGCONNECT_TIMEOUT'])),
        expected_version=dict(type='str', default=DEFAULT_EXPECTED_VERSION),
    )


def quote_ident(identifier):
    """Quote an identifier, doubling embedded quotes"""
    return '"%s"' % identifier.replace('"', '""')


def find_string_submatch_map(pattern, text):
    """
    Return the named groups of the first match of pattern in text.

    Returns an empty dict when nothing matches.
    """
    match = re.search(pattern, text)
    if not match:
        return {}
    return {name: value for name, value in match.groupdict().items() if value is not None}


class PostgreSQLHelper(object):
    """
    Helper class for managing PostgreSQL connections and operations
    """

    def __init__(self, module):
        self.module = module
        self.host = module.params.get('host', 'localhost')
        self.port = module.params.get('port', 5432)
        self.user = module.params.get('user', 'postgres')
        self.password = module.params.get('password', '')
        self.database = module.params.get('database', 'postgres')
        self.ssl_mode = module.params.get('ssl_mode', 'prefer')
        self.ssl_cert = module.params.get('ssl_cert')
        self.ssl_key = module.params.get('ssl_key')
        self.ssl_rootcert = module.params.get('ssl_rootcert')
        self.conn_timeout = module.params.get('connect_timeout', 30)
        self.expected_version = module.params.get('expected_version') or DEFAULT_EXPECTED_VERSION
        if not find_string_submatch_map(EXPECTED_VERSION_PATTERN, str(self.expected_version)):
            module.fail_json(
                msg="Invalid expected_version '%s', expected a numeric version such as 9.0.0" % self.expected_version
            )
        self.conn = None
        self._version = None

    def _connection_params(self):
        conn_params = dict(
            host=self.host,
            port=self.port,
            user=self.user,
            dbname=self.database,
            connect_timeout=self.conn_timeout,
            application_name='ansible_postgresql',  # Identify the connection in pg_stat_activity
        )

        if self.password:
            conn_params['password'] = self.password

        if self.ssl_mode:
            conn_params['sslmode'] = self.ssl_mode

        if self.ssl_cert:
            conn_params['sslcert'] = self.ssl_cert

        if self.ssl_key:
            conn_params['sslkey'] = self.ssl_key

        if self.ssl_rootcert:
            conn_params['sslrootcert'] = self.ssl_rootcert

        return conn_params

    def connect(self):
        """
        Connect to the PostgreSQL server
        """
        if not HAS_PSYCOPG2:
            self.module.fail_json(msg=missing_required_lib("psycopg2"), exception=POSTGRESQL_IMP_ERR)

        conn_params = self._connection_params()

        # Attempt to connect with retries for transient network issues
        retries = 3
        delay = 2
        last_error = None

        for attempt in range(retries):
            try:
                self.conn = psycopg2.connect(**conn_params)
                self.conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
                cursor = self.conn.cursor()
                cursor.execute("SELECT 1")
                cursor.close()
                return self.conn
            except psycopg2.OperationalError as e:
                last_error = e
                if attempt < retries - 1:
                    self.module.debug("Connection attempt %d failed: %s" % (attempt + 1, e))
                    time.sleep(delay)
                    delay *= 2  # Exponential backoff
            except psycopg2.Error as e:
                self.module.fail_json(msg="Unable to connect to PostgreSQL: %s" % str(e))

        self.module.fail_json(msg="Unable to connect to PostgreSQL after multiple attempts: %s" % str(last_error))

    def execute_query(self, query, params=None, fail_on_error=True, fetch=True):
        """
        Execute a SQL query and return the results

        Args:
            query: The SQL query to execute
            params: The parameters for the query (optional)
            fail_on_error: Whether to fail with an error or return None (default: True)
            fetch: Whether to fetch and return results (default: True)
        """
        if not self.conn:
            self.connect()

        try:
            cursor = self.conn.cursor()
            try:
                cursor.execute(query, params or ())
                if fetch:
                    try:
                        result = cursor.fetchall()
                    except psycopg2.ProgrammingError:
                        result = []
                    return result
                return True
            finally:
                cursor.close()
        except psycopg2.Error as e:
            if not fail_on_error:
                return None

            error_message = str(e).strip()

            if "does not exist" in error_message:
                if "database" in error_message:
                    self.module.fail_json(msg="Database does not exist: %s" % error_message)
                elif "relation" in error_message or "table" in error_message:
                    self.module.fail_json(msg="Table does not exist: %s" % error_message)
                elif "role" in error_message:
                    self.module.fail_json(msg="Role does not exist: %s" % error_message)
                else:
                    self.module.fail_json(msg="Object does not exist: %s" % error_message)
            elif "already exists" in error_message:
                self.module.fail_json(msg="Object already exists: %s" % error_message)
            elif "permission denied" in error_message:
                self.module.fail_json(msg="Permission denied: %s" % error_message)
            elif "syntax error" in error_message:
                self.module.fail_json(msg="SQL syntax error: %s" % error_message)
            else:
                self.module.fail_json(msg="Error executing query: %s" % error_message)

    def execute_transaction(self, queries):
        """
        Run several statements atomically

        Args:
            queries: List of SQL statements without parameters
        """
        if not self.conn:
            self.connect()

        cursor = self.conn.cursor()
        try:
            cursor.execute("BEGIN")
            for query in queries:
                self.module.debug("Executing: %s" % query)
                cursor.execute(query)
            cursor.execute("COMMIT")
        except psycopg2.Error as e:
            cursor.execute("ROLLBACK")
            self.module.fail_json(msg="Error executing transaction: %s" % str(e).strip(), queries=queries)
        finally:
            cursor.close()

    def close(self):
        """
        Close the database connection
        """
        if self.conn:
            self.conn.close()
            self.conn = None

    def get_version(self):
        """
        Probe the server version

        Falls back to expected_version when `SELECT version()` cannot be parsed.

        Returns:
            LooseVersion of the server
        """
        if self._version is not None:
            return self._version

        result = self.execute_query("SELECT version()")
        version_str = result[0][0] if result else ''
        matches = find_string_submatch_map(VERSION_PATTERN, version_str)

        if 'version' in matches:
            self._version = LooseVersion(matches['version'])
        else:
            self.module.warn(
                "Unable to detect the PostgreSQL version from '%s', assuming %s"
                % (version_str, self.expected_version)
            )
            self._version = LooseVersion(self.expected_version)

        self.module.debug("PostgreSQL server version: %s" % self._version)
        return self._version

    def database_exists(self, db_name):
        """
        Check if a database exists
        """
        result = self.execute_query(
            "SELECT 1 FROM pg_database WHERE datname = %s",
            [db_name],
        )
        return bool(result)

    def role_exists(self, role_name):
        """
        Check if a role exists
        """
        result = self.execute_query(
            "SELECT 1 FROM pg_roles WHERE rolname = %s",
            [role_name],
        )
        return bool(result)

    def schema_exists(self, schema_name):
        """
        Check if a schema exists in the current database
        """
        result = self.execute_query(
            "SELECT 1 FROM pg_namespace WHERE nspname = %s",
            [schema_name],
        )
        return bool(result)

    def object_exists(self, object_type, object_name, schema=None):
        """
        Check if an object of the given type exists

        Args:
            object_type: Object type, a key of ACL_CATALOGS
            object_name: Name of the object
            schema: Schema name for schema-qualified object types
        """
        if object_type == 'database':
            return self.database_exists(object_name)
        if object_type == 'schema':
            return self.schema_exists(object_name)

        query, params = self._catalog_query(object_type, "SELECT 1", object_name, schema)
        return bool(self.execute_query(query, params))

    def list_relations(self, object_type, schema):
        """
        List the tables (views included) or sequences of a schema

        Returns:
            Sorted list of relation names
        """
        result = self.execute_query(
            """
            SELECT c.relname
            FROM pg_class c
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE n.nspname = %s AND c.relkind = ANY(%s)
            ORDER BY c.relname
            """,
            [schema, list(RELKINDS[object_type])],
        )
        return [row[0] for row in result or []]

    def list_schemas(self):
        """
        List user schemas of the current database
        """
        result = self.execute_query("""
            SELECT nspname
            FROM pg_namespace
            WHERE nspname NOT LIKE 'pg\\_%%' AND nspname <> 'information_schema'
            ORDER BY nspname
        """)
        return [row[0] for row in result or []]

    def _catalog_query(self, object_type, select, object_name, schema=None):
        catalog, name_column, _, _, _ = ACL_CATALOGS[object_type]
        query = "%s FROM %s o" % (select, catalog)
        conditions = ["o.%s = %%s" % name_column]
        params = [object_name]

        if object_type in SCHEMA_QUALIFIED:
            query += " JOIN pg_namespace n ON n.oid = o.%s" % SCHEMA_QUALIFIED[object_type]
            conditions.append("n.nspname = %s")
            params.append(schema)

        if object_type in RELKINDS:
            conditions.append("o.relkind = ANY(%s)")
            params.append(list(RELKINDS[object_type]))

        return "%s WHERE %s" % (query, " AND ".join(conditions)), params

    def get_object_privileges(self, object_type, role, object_name, schema=None):
        """
        Get the privileges a role holds on one object

        A NULL ACL means the object still has its built-in default privileges,
        so acldefault() is used in that case. The role 'public' maps to grantee 0.

        Args:
            object_type: Object type, a key of ACL_CATALOGS
            role: Role name, or 'public'
            object_name: Name of the object
            schema: Schema name for schema-qualified object types

        Returns:
            Dictionary mapping privilege names to their grant option flag
        """
        _, _, acl_column, owner_column, default_code = ACL_CATALOGS[object_type]
        select = (
            "SELECT acl.privilege_type, acl.is_grantable"
            " FROM (SELECT (aclexplode(COALESCE(o.%s, acldefault('%s', o.%s)))).*"
            % (acl_column, default_code, owner_column)
        )
        query, params = self._catalog_query(object_type, select, object_name, schema)
        query += ") acl"

        if role.lower() == 'public':
            query += " WHERE acl.grantee = 0"
        else:
            query += " WHERE acl.grantee = (SELECT oid FROM pg_roles WHERE rolname = %s)"
            params.append(role)

        rows = self.execute_query(query, params)

        privileges = {}
        for row in rows or []:
            privilege, grantable = row[0], bool(row[1])
            # Several overloads of a function may report the same privilege
            privileges[privilege] = privileges.get(privilege, False) or grantable
        return privileges
