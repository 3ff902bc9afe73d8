"""Unit tests for the settings manager."""

import os
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from jsonschema import ValidationError

from flowlog_store.config_manager import SettingsManager, load_settings
from flowlog_store.db.config.db_config import DatabaseConfig
from flowlog_store.db.core.exceptions import ConfigurationError


class TestSettingsManager:
    """Test settings loading, overrides and validation."""

    @pytest.fixture
    def base_config(self):
        return {
            'database': {
                'type': 'postgresql',
                'host': 'db.internal',
                'database': 'flowlogs',
                'username': 'flow',
                'password': 'hunter2',
                'pool': {'min': 1, 'max': 8},
            },
            'logging': {'level': 'INFO'},
            'storage': {'batch_size': 500},
        }

    @pytest.fixture
    def config_file(self, base_config):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            yaml.dump(base_config, f)
            temp_path = f.name

        yield temp_path

        if os.path.exists(temp_path):
            os.unlink(temp_path)

    @pytest.fixture(autouse=True)
    def clean_env(self):
        names = list(SettingsManager.ENV_MAPPINGS.values())
        with patch.dict(os.environ, {}, clear=False):
            for name in names:
                os.environ.pop(name, None)
            yield

    def test_init_with_valid_config(self, config_file):
        manager = SettingsManager(config_file)

        assert manager.base_config_path == Path(config_file)
        assert manager.get('database.host') == 'db.internal'
        assert manager.get('storage.batch_size') == 500

    def test_init_with_missing_file(self):
        with pytest.raises(FileNotFoundError):
            SettingsManager('non_existent_file.yaml')

    def test_defaults_without_file(self):
        manager = SettingsManager()
        assert manager.get('database.type') == 'sqlite'
        assert manager.get('storage.max_query_rows') == 50000

    def test_non_mapping_file(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write("- just\n- a list\n")
            path = f.name
        try:
            with pytest.raises(ValueError):
                SettingsManager(path)
        finally:
            os.unlink(path)

    def test_merge_override(self, config_file):
        manager = SettingsManager(config_file)

        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            yaml.dump({'database': {'host': 'replica.internal', 'port': 6432}}, f)
            override_path = f.name

        try:
            manager.merge_override(override_path)
            assert manager.get('database.host') == 'replica.internal'
            assert manager.get('database.port') == 6432
            # untouched keys survive the merge
            assert manager.get('database.username') == 'flow'
        finally:
            os.unlink(override_path)

    def test_env_overrides(self, config_file):
        with patch.dict(os.environ, {
            'FLOWLOG_DB_HOST': 'env-host',
            'FLOWLOG_DB_PASSWORD': 'from-env',
            'FLOWLOG_LOG_LEVEL': 'DEBUG',
        }):
            manager = SettingsManager(config_file)

        assert manager.get('database.host') == 'env-host'
        assert manager.get('database.password') == 'from-env'
        assert manager.get('logging.level') == 'DEBUG'

    def test_env_switches_backend(self):
        with patch.dict(os.environ, {'FLOWLOG_DB_TYPE': 'duckdb', 'FLOWLOG_DB_PATH': 'logs.duckdb'}):
            manager = SettingsManager()

        config = manager.get_database_config()
        assert config.type == 'duckdb'
        assert config.database_path == 'logs.duckdb'

    def test_validate(self, config_file):
        SettingsManager(config_file).validate()

    def test_validate_rejects_bad_type(self, config_file):
        manager = SettingsManager(config_file)
        manager.merged_config['database']['type'] = 'oracle'
        with pytest.raises(ValidationError):
            manager.validate()

    def test_validate_rejects_bad_port(self, config_file):
        manager = SettingsManager(config_file)
        manager.merged_config['database']['port'] = 70000
        with pytest.raises(ValidationError):
            manager.validate()

    def test_get_database_config(self, config_file):
        config = SettingsManager(config_file).get_database_config()

        assert isinstance(config, DatabaseConfig)
        assert config.type == 'postgresql'
        assert config.port == 5432
        assert config.pool.max == 8
        assert config.max_connections == 20

    def test_get_database_config_invalid(self, config_file):
        manager = SettingsManager(config_file)
        del manager.merged_config['database']['host']

        with pytest.raises(ConfigurationError) as exc_info:
            manager.get_database_config()
        assert exc_info.value.errors == ["PostgreSQL requires either connectionString or host/database"]

    def test_get_database_config_missing_type(self):
        manager = SettingsManager()
        del manager.merged_config['database']['type']
        with pytest.raises(ConfigurationError):
            manager.get_database_config()

    def test_redaction(self, config_file):
        manager = SettingsManager(config_file)
        manager.merged_config['database']['connection_string'] = 'postgresql://flow:hunter2@db/flowlogs'

        redacted = manager.get_config(redact_secrets=True)
        assert redacted['database']['password'] == '***REDACTED***'
        assert 'hunter2' not in redacted['database']['connection_string']

        assert manager.get_config(redact_secrets=False)['database']['password'] == 'hunter2'

    def test_save_merged_config(self, config_file, tmp_path):
        output = tmp_path / 'merged.yaml'
        SettingsManager(config_file).save_merged_config(output)

        saved = yaml.safe_load(output.read_text())
        assert saved['database']['password'] == '***REDACTED***'
        assert saved['database']['host'] == 'db.internal'

    def test_required_env_vars(self, config_file):
        required = SettingsManager(config_file).get_required_env_vars()
        assert 'FLOWLOG_DB_CONNECTION' in required
        assert 'FLOWLOG_DB_HOST' not in required

    def test_load_settings(self, config_file):
        manager = load_settings(config_file)
        assert manager.get('database.database') == 'flowlogs'
