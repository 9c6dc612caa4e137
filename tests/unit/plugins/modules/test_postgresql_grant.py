#!/usr/bin/python3

import pytest
from unittest.mock import patch, MagicMock
from ansible.module_utils.compat.version import LooseVersion

from ansible_collections.haydnjevans.postgresql.plugins.modules import postgresql_grant
from ansible_collections.haydnjevans.postgresql.plugins.modules.postgresql_grant import (
    build_privilege_queries,
    check_privileges_changes,
    normalize_privileges,
    object_reference,
    resolve_targets,
    role_reference,
)

TABLE_PRIVILEGES = ["SELECT", "INSERT", "UPDATE", "DELETE", "TRUNCATE", "REFERENCES", "TRIGGER"]


def grants(*privileges, grantable=False):
    return {privilege: grantable for privilege in privileges}


@pytest.fixture
def mock_module():
    module = MagicMock()
    module.params = {
        'role': 'app',
        'database': 'appdb',
        'object_type': 'table',
        'schema': 'public',
        'objects': [],
        'privileges': ['ALL'],
        'with_grant_option': False,
        'state': 'present',
        'host': 'localhost',
        'port': 5432,
        'user': 'postgres',
        'password': None,
        'ssl_mode': 'disable',
        'ssl_cert': None,
        'ssl_key': None,
        'ssl_rootcert': None,
        'connect_timeout': 30,
        'expected_version': '9.0.0',
    }
    module.check_mode = False
    module.fail_json = MagicMock(side_effect=Exception("Module failed"))
    module.exit_json = MagicMock()
    module.warn = MagicMock()
    module.debug = MagicMock()
    return module


@pytest.fixture
def mock_helper():
    helper = MagicMock()
    helper.get_version.return_value = LooseVersion("16.4")
    helper.role_exists.return_value = True
    helper.object_exists.return_value = True
    helper.list_relations.return_value = ['orders']
    helper.get_object_privileges.return_value = grants(*TABLE_PRIVILEGES)
    return helper


def test_normalize_privileges():
    assert normalize_privileges([' select', 'Insert', 'SELECT']) == ['INSERT', 'SELECT']
    assert normalize_privileges(None) == []


def test_role_reference():
    assert role_reference('public') == 'PUBLIC'
    assert role_reference('PUBLIC') == 'PUBLIC'
    assert role_reference('App') == '"App"'


@pytest.mark.parametrize(
    "object_type, name, schema, expected",
    [
        ('database', 'appdb', None, 'DATABASE "appdb"'),
        ('schema', 'reporting', None, 'SCHEMA "reporting"'),
        ('table', 'users', 'public', 'TABLE "public"."users"'),
        ('sequence', 'users_id_seq', 'public', 'SEQUENCE "public"."users_id_seq"'),
        ('function', 'refresh', 'public', 'FUNCTION "public"."refresh"'),
        ('foreign_data_wrapper', 'postgres_fdw', None, 'FOREIGN DATA WRAPPER "postgres_fdw"'),
        ('foreign_server', 'remote', None, 'FOREIGN SERVER "remote"'),
    ],
)
def test_object_reference(object_type, name, schema, expected):
    assert object_reference(object_type, name, schema) == expected


class TestBuildPrivilegeQueries:

    def test_present_revokes_then_grants(self):
        queries = build_privilege_queries('present', 'table', ['orders'], 'public', 'app', ['INSERT', 'SELECT'], False)
        assert queries == [
            'REVOKE ALL PRIVILEGES ON TABLE "public"."orders" FROM "app"',
            'GRANT INSERT, SELECT ON TABLE "public"."orders" TO "app"',
        ]

    def test_all_with_grant_option(self):
        queries = build_privilege_queries('present', 'schema', ['reporting'], None, 'app', ['ALL'], True)
        assert queries[-1] == 'GRANT ALL PRIVILEGES ON SCHEMA "reporting" TO "app" WITH GRANT OPTION'

    def test_absent_only_revokes(self):
        queries = build_privilege_queries('absent', 'database', ['appdb'], None, 'public', [], False)
        assert queries == ['REVOKE ALL PRIVILEGES ON DATABASE "appdb" FROM PUBLIC']

    def test_no_targets(self):
        assert build_privilege_queries('present', 'table', [], 'public', 'app', ['SELECT'], False) == []


class TestCheckPrivilegesChanges:

    def check(self, module, helper, privileges, version, state='present', with_grant_option=False, object_type='table'):
        return check_privileges_changes(
            module, helper, state, object_type, ['orders'], 'public', 'app', privileges, with_grant_option, version
        )

    def test_all_on_pg16_is_satisfied_without_maintain(self, mock_module, mock_helper):
        drifted, current = self.check(mock_module, mock_helper, ['ALL'], LooseVersion("16.4"))
        assert drifted == []
        assert current == {'orders': sorted(TABLE_PRIVILEGES)}
        mock_helper.get_object_privileges.assert_called_once_with('table', 'app', 'orders', 'public')

    def test_all_on_pg17_requires_maintain(self, mock_module, mock_helper):
        drifted, _ = self.check(mock_module, mock_helper, ['ALL'], LooseVersion("17.0"))
        assert drifted == ['orders']

    def test_all_on_pg17_with_maintain(self, mock_module, mock_helper):
        mock_helper.get_object_privileges.return_value = grants(*(TABLE_PRIVILEGES + ['MAINTAIN']))
        drifted, _ = self.check(mock_module, mock_helper, ['ALL'], LooseVersion("17.0"))
        assert drifted == []

    def test_extra_privileges_are_drift(self, mock_module, mock_helper):
        mock_helper.get_object_privileges.return_value = grants('SELECT', 'UPDATE')
        drifted, _ = self.check(mock_module, mock_helper, ['SELECT'], LooseVersion("16.4"))
        assert drifted == ['orders']

    def test_missing_grant_option_is_drift(self, mock_module, mock_helper):
        mock_helper.get_object_privileges.return_value = grants('SELECT')
        drifted, _ = self.check(mock_module, mock_helper, ['SELECT'], LooseVersion("16.4"), with_grant_option=True)
        assert drifted == ['orders']

    def test_unwanted_grant_option_is_drift(self, mock_module, mock_helper):
        mock_helper.get_object_privileges.return_value = grants('SELECT', grantable=True)
        drifted, _ = self.check(mock_module, mock_helper, ['SELECT'], LooseVersion("16.4"))
        assert drifted == ['orders']

    def test_matching_grant_option(self, mock_module, mock_helper):
        mock_helper.get_object_privileges.return_value = grants('SELECT', grantable=True)
        drifted, _ = self.check(mock_module, mock_helper, ['SELECT'], LooseVersion("16.4"), with_grant_option=True)
        assert drifted == []

    def test_absent_with_privileges(self, mock_module, mock_helper):
        mock_helper.get_object_privileges.return_value = grants('SELECT')
        drifted, _ = self.check(mock_module, mock_helper, [], LooseVersion("16.4"), state='absent')
        assert drifted == ['orders']

    def test_absent_without_privileges(self, mock_module, mock_helper):
        mock_helper.get_object_privileges.return_value = {}
        drifted, current = self.check(mock_module, mock_helper, [], LooseVersion("16.4"), state='absent')
        assert drifted == []
        assert current == {'orders': []}


class TestResolveTargets:

    def test_database_targets_the_database(self, mock_module, mock_helper):
        targets = resolve_targets(mock_module, mock_helper, 'database', 'appdb', None, [])
        assert targets == ['appdb']
        mock_helper.object_exists.assert_called_once_with('database', 'appdb', None)

    def test_schema_targets_the_schema(self, mock_module, mock_helper):
        assert resolve_targets(mock_module, mock_helper, 'schema', 'appdb', 'reporting', []) == ['reporting']

    def test_every_table_of_the_schema(self, mock_module, mock_helper):
        mock_helper.list_relations.return_value = ['customers', 'orders']
        assert resolve_targets(mock_module, mock_helper, 'table', 'appdb', 'public', []) == ['customers', 'orders']
        mock_helper.list_relations.assert_called_once_with('table', 'public')
        mock_helper.object_exists.assert_not_called()

    def test_named_objects_must_exist(self, mock_module, mock_helper):
        mock_helper.object_exists.return_value = False
        with pytest.raises(Exception, match="Module failed"):
            resolve_targets(mock_module, mock_helper, 'sequence', 'appdb', 'public', ['missing_seq'])
        assert mock_module.fail_json.call_args[1]['msg'] == "Sequence 'missing_seq' does not exist"

    def test_functions_need_objects(self, mock_module, mock_helper):
        with pytest.raises(Exception, match="Module failed"):
            resolve_targets(mock_module, mock_helper, 'function', 'appdb', 'public', [])
        assert mock_module.fail_json.call_args[1]['msg'] == "objects is required for function privileges"


class TestMain:

    def run_main(self, mock_module, mock_helper):
        with patch.object(postgresql_grant, 'AnsibleModule', return_value=mock_module), \
                patch.object(postgresql_grant, 'PostgreSQLHelper', return_value=mock_helper):
            postgresql_grant.main()
        return mock_module.exit_json.call_args[1]

    def test_no_change_when_privileges_match(self, mock_module, mock_helper):
        result = self.run_main(mock_module, mock_helper)

        assert result['changed'] is False
        assert result['queries'] == []
        assert result['server_version'] == '16.4'
        mock_helper.execute_transaction.assert_not_called()
        mock_helper.close.assert_called_once()

    def test_applies_changes_on_drift(self, mock_module, mock_helper):
        mock_helper.get_version.return_value = LooseVersion("17.2")

        result = self.run_main(mock_module, mock_helper)

        expected = [
            'REVOKE ALL PRIVILEGES ON TABLE "public"."orders" FROM "app"',
            'GRANT ALL PRIVILEGES ON TABLE "public"."orders" TO "app"',
        ]
        assert result['changed'] is True
        assert result['queries'] == expected
        mock_helper.execute_transaction.assert_called_once_with(expected)

    def test_check_mode_reports_without_applying(self, mock_module, mock_helper):
        mock_module.check_mode = True
        mock_helper.get_version.return_value = LooseVersion("17.2")

        result = self.run_main(mock_module, mock_helper)

        assert result['changed'] is True
        mock_helper.execute_transaction.assert_not_called()

    def test_rejects_privileges_invalid_for_object_type(self, mock_module, mock_helper):
        mock_module.params['privileges'] = ['usage']

        with pytest.raises(Exception, match="Module failed"):
            self.run_main(mock_module, mock_helper)

        assert "Invalid privileges for table: USAGE" in mock_module.fail_json.call_args[1]['msg']
        mock_helper.connect.assert_not_called()

    def test_rejects_maintain_before_17(self, mock_module, mock_helper):
        mock_module.params['privileges'] = ['SELECT', 'MAINTAIN']

        with pytest.raises(Exception, match="Module failed"):
            self.run_main(mock_module, mock_helper)

        assert "on PostgreSQL 16.4" in mock_module.fail_json.call_args_list[0][1]['msg']
        mock_helper.close.assert_called_once()

    def test_rejects_unknown_role(self, mock_module, mock_helper):
        mock_helper.role_exists.return_value = False

        with pytest.raises(Exception, match="Module failed"):
            self.run_main(mock_module, mock_helper)

        assert mock_module.fail_json.call_args_list[0][1]['msg'] == "Role 'app' does not exist"

    def test_public_role_is_not_looked_up(self, mock_module, mock_helper):
        mock_module.params['role'] = 'public'

        self.run_main(mock_module, mock_helper)

        mock_helper.role_exists.assert_not_called()

    def test_absent_revokes_everything(self, mock_module, mock_helper):
        mock_module.params['state'] = 'absent'
        mock_module.params['privileges'] = None

        result = self.run_main(mock_module, mock_helper)

        assert result['queries'] == ['REVOKE ALL PRIVILEGES ON TABLE "public"."orders" FROM "app"']
