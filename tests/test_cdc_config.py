import json

import pytest

from replicator.cdc_config import (
    ConfigError,
    ConsumerConfig,
    SourceConfig,
    load_latest_offset,
    load_table_specs,
    save_offset,
)
from replicator.cdc_event import DMLOperation
from replicator.offset import Offset


def test_consumer_config_from_environment(monkeypatch):
    monkeypatch.setenv("CDC_DATABASE_NAME", "inventory")
    monkeypatch.setenv("CDC_REPLICATE_EXISTING_DATA", "false")
    monkeypatch.setenv("CDC_QUEUE_SIZE", "10")

    config = ConsumerConfig()

    assert config.database_name == "inventory"
    assert config.replicate_existing_data is False
    assert config.queue_size == 10


def test_source_config_from_environment(monkeypatch):
    monkeypatch.setenv("PG_PORT", "6543")
    monkeypatch.setenv("CDC_SERVER_NAME", "inv")

    config = SourceConfig()

    assert config.port == 6543
    assert config.server_name == "inv"


def test_load_table_specs(tmp_path):
    path = tmp_path / "tables.json"
    path.write_text(json.dumps([
        {"schema": "dbo", "table": "customers", "columns": ["id", "name"],
         "dml_blacklist": ["delete"]},
        {"schema": "dbo", "table": "orders"},
    ]))

    specs = load_table_specs(str(path))

    assert specs[0].table_id == "dbo.customers"
    assert specs[0].columns == {"id", "name"}
    assert specs[0].dml_blacklist == {DMLOperation.DELETE}
    assert specs[1].columns == frozenset()
    assert specs[1].dml_blacklist == frozenset()


def test_no_table_specs_file_means_all_tables():
    assert load_table_specs(None) == []


@pytest.mark.parametrize("content", [
    "not json",
    json.dumps({"schema": "dbo"}),
    json.dumps([{"schema": "dbo"}]),
    json.dumps([{"schema": "dbo", "table": "t", "dml_blacklist": ["TRUNCATE"]}]),
    json.dumps([{"schema": "dbo", "table": "t", "dml_blacklist": ["unknown"]}]),
])
def test_invalid_table_specs(tmp_path, content):
    path = tmp_path / "tables.json"
    path.write_text(content)

    with pytest.raises(ConfigError):
        load_table_specs(str(path))


def test_offset_file_round_trip(tmp_path):
    path = str(tmp_path / "offset.json")
    offset = Offset({"lsn": 99, "snapshot": False}, {"public.customers"})

    assert load_latest_offset(path) == Offset()
    save_offset(path, offset)

    assert load_latest_offset(path) == offset
