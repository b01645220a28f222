# tests/test_schema.py
from decimal import Decimal

from sluice_core.config import ColumnMapping, Dataset
from sluice_core.schema import create_table_sql, infer_column_mapping, infer_type, sanitize_name


def test_infer_types_from_first_row():
    mapping = infer_column_mapping([{"a": 1, "b": 1.5, "c": True, "d": "x"}])

    assert [(c.source, c.target, c.type) for c in mapping.columns] == [
        ("a", "a", "Int64"),
        ("b", "b", "Float64"),
        ("c", "c", "UInt8"),
        ("d", "d", "String"),
    ]


def test_infer_type_edge_cases():
    assert infer_type(2.0) == "Int64"
    assert infer_type(Decimal("10")) == "Int64"
    assert infer_type(Decimal("10.01")) == "Float64"
    assert infer_type(None) == "String"
    assert infer_type(False) == "UInt8"


def test_numeric_column_with_scale_infers_float():
    # NUMERIC(10, 2) values come back as Decimal("100.00") even when whole
    mapping = infer_column_mapping([{"amount": Decimal("100.00"), "qty": Decimal("3")}])

    assert [c.type for c in mapping.columns] == ["Float64", "Int64"]
    assert infer_type(Decimal("NaN")) == "Float64"


def test_empty_batch_has_no_mapping():
    assert infer_column_mapping([]) is None


def test_target_names_are_sanitized_and_unique():
    mapping = infer_column_mapping([{"Order Id": 1, "Order-Id": 2, "total €": 3}])

    assert mapping.target_columns == ["Order_Id", "Order_Id_2", "total__"]
    assert mapping.source_columns == ["Order Id", "Order-Id", "total €"]
    assert sanitize_name("") == "_"


def _mapping():
    return ColumnMapping(columns=[
        {"source": "id", "target": "id", "type": "Int64"},
        {"source": "order date", "target": "order_date", "type": "String"},
        {"source": "amount", "target": "amount", "type": "Float64"},
    ])


def test_create_table_append_uses_mergetree():
    dataset = Dataset(id=1, connection_id=1, source_table="orders", target_table="orders",
                      unique_column="id")

    ddl = create_table_sql(dataset, _mapping())

    assert ddl.startswith("CREATE TABLE IF NOT EXISTS orders (")
    assert "ENGINE = MergeTree" in ddl
    assert "ORDER BY (`id`)" in ddl
    assert "`_synced_at` DateTime DEFAULT now()" in ddl
    assert "PARTITION BY" not in ddl


def test_create_table_upsert_uses_replacing_mergetree():
    dataset = Dataset(id=1, connection_id=1, source_table="orders", target_table="orders",
                      unique_column="id", load_mode="upsert")

    ddl = create_table_sql(dataset, _mapping(), database="analytics")

    assert ddl.startswith("CREATE TABLE IF NOT EXISTS analytics.orders")
    assert "ENGINE = ReplacingMergeTree(_synced_at)" in ddl


def test_create_table_date_partition():
    dataset = Dataset(id=1, connection_id=1, source_table="orders", target_table="orders",
                      sync_strategy="date_partition", partition_column="order date",
                      partition_type="daily")

    ddl = create_table_sql(dataset, _mapping())

    assert "PARTITION BY toYYYYMMDD(toDate(parseDateTimeBestEffortOrZero(toString(`order_date`))))" in ddl
    # No unique column configured: order by the partition column
    assert "ORDER BY (`order_date`)" in ddl
