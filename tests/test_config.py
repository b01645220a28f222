# tests/test_config.py
import pytest
from cryptography.fernet import Fernet
from pydantic import ValidationError

from sluice_core.config import (
    ColumnMapping,
    Connection,
    ConnectionType,
    Dataset,
    Settings,
    load_settings,
)
from sluice_core.errors import ConnectionError


def test_load_settings_from_yaml(tmp_path, monkeypatch):
    """YAML values are loaded and defaults fill the rest."""
    monkeypatch.delenv("SLUICE_INSERT_BATCH_SIZE", raising=False)
    config_file = tmp_path / "sluice.yml"
    config_file.write_text("""
redis_url: redis://cache:6379/0
clickhouse_host: ch.internal
read_batch_size: 5000
insert_batch_size: 2500
""")

    settings = load_settings(str(config_file))

    assert settings.redis_url == "redis://cache:6379/0"
    assert settings.clickhouse_host == "ch.internal"
    assert settings.read_batch_size == 5000
    assert settings.insert_batch_size == 2500
    assert settings.lock_ttl == 7200
    assert settings.heartbeat_ttl == 60


def test_env_overrides_yaml(tmp_path, monkeypatch):
    config_file = tmp_path / "sluice.yml"
    config_file.write_text("clickhouse_host: from-file\nlock_ttl: 100\n")
    monkeypatch.setenv("SLUICE_CLICKHOUSE_HOST", "from-env")
    monkeypatch.setenv("SLUICE_LOCK_TTL", "900")

    settings = load_settings(str(config_file))

    assert settings.clickhouse_host == "from-env"
    assert settings.lock_ttl == 900


def test_default_batch_sizes():
    settings = Settings()
    assert settings.read_batch_size == 20000
    assert settings.insert_batch_size == 10000
    assert settings.report_interval == 50000


def test_read_batch_smaller_than_insert_batch_is_rejected():
    with pytest.raises(ValidationError, match="read_batch_size"):
        Settings(read_batch_size=100, insert_batch_size=500)


def test_connection_type_aliases():
    assert Connection(id=1, type="postgresql", database="x").type == ConnectionType.POSTGRES
    assert Connection(id=1, type="SQLServer", database="x").type == ConnectionType.MSSQL
    assert Connection(id=1, type="mariadb", database="x").type == ConnectionType.MYSQL


def test_connection_credentials_decrypts_fernet_token():
    key = Fernet.generate_key().decode()
    token = Fernet(key.encode()).encrypt(b"s3cr3t").decode()
    connection = Connection(id=1, type="mysql", host="db", port=3306, database="shop",
                            username="etl", encrypted_password=token)

    creds = connection.credentials(key)

    assert creds["password"] == "s3cr3t"
    assert creds["user"] == "etl"
    assert creds["port"] == 3306


def test_connection_credentials_wrong_key():
    token = Fernet(Fernet.generate_key()).encrypt(b"s3cr3t").decode()
    connection = Connection(id=1, type="postgres", database="shop", encrypted_password=token)

    with pytest.raises(ConnectionError, match="Could not decrypt"):
        connection.credentials(Fernet.generate_key().decode())


def test_connection_credentials_missing_key():
    connection = Connection(id=1, type="postgres", database="shop", encrypted_password="gAAAA")
    with pytest.raises(ConnectionError, match="SLUICE_ENCRYPTION_KEY"):
        connection.credentials(None)


def test_column_mapping_accepts_legacy_list_and_json():
    entries = [{"source": "Order Id", "target": "order_id", "type": "Int64"}]

    from_list = ColumnMapping.model_validate(entries)
    from_json = ColumnMapping.model_validate('[{"source": "Order Id", "target": "order_id", "type": "Int64"}]')

    assert from_list.version == 1
    assert from_list.kind == "column_mapping"
    assert from_list.source_columns == ["Order Id"]
    assert from_json.target_columns == ["order_id"]


def test_column_mapping_rejects_duplicate_targets():
    with pytest.raises(ValidationError, match="duplicate target"):
        ColumnMapping(columns=[
            {"source": "a", "target": "x"},
            {"source": "b", "target": "x"},
        ])


def test_column_mapping_rejects_unsafe_names_and_types():
    with pytest.raises(ValidationError):
        ColumnMapping(columns=[{"source": "a", "target": "bad name"}])
    with pytest.raises(ValidationError):
        ColumnMapping(columns=[{"source": "a", "target": "a", "type": "Array(String)"}])


def test_column_mapping_accepts_nullable_and_decimal():
    mapping = ColumnMapping(columns=[
        {"source": "price", "target": "price", "type": "Nullable(Decimal(18, 2))"},
    ])
    assert mapping.type_of("price") == "Nullable(Decimal(18, 2))"
    assert mapping.type_of("missing") == "String"


def test_dataset_requires_exactly_one_source():
    with pytest.raises(ValidationError, match="exactly one"):
        Dataset(id=1, connection_id=1, target_table="t")
    with pytest.raises(ValidationError, match="exactly one"):
        Dataset(id=1, connection_id=1, target_table="t", source_table="a", source_query="SELECT 1")

    dataset = Dataset(id=1, connection_id=1, target_table="t", source_query="SELECT 1")
    assert dataset.label == "dataset-1"
