from replicator.offset import Offset


def test_streaming_offset_before_or_at():
    latest = Offset({"lsn": 100, "snapshot": False})

    assert Offset({"lsn": 99}).is_before_or_at(latest)
    assert Offset({"lsn": 100}).is_before_or_at(latest)
    assert not Offset({"lsn": 101}).is_before_or_at(latest)


def test_snapshot_offset_is_never_before():
    latest = Offset({"lsn": 100})

    assert not Offset({"lsn": 1, "snapshot": True}).is_before_or_at(latest)
    assert not Offset({"lsn": 1, "snapshot": "last"}).is_before_or_at(latest)


def test_streaming_offset_is_not_before_snapshot_mark():
    latest = Offset({"lsn": 100, "snapshot": True})

    assert not Offset({"lsn": 5}).is_before_or_at(latest)


def test_empty_latest_offset_never_deduplicates():
    assert not Offset({"lsn": 5}).is_before_or_at(Offset())
    assert not Offset({"lsn": 5}).is_before_or_at(None)


def test_snapshot_markers():
    assert Offset({"snapshot": True}).is_snapshot()
    assert Offset({"snapshot": "true"}).is_snapshot()
    assert Offset({"snapshot": "incremental"}).is_snapshot()
    assert not Offset({"snapshot": "false"}).is_snapshot()
    assert not Offset({"snapshot": False}).is_snapshot()
    assert not Offset({}).is_snapshot()


def test_sql_server_position_ordering():
    latest = Offset({
        "commit_lsn": "0000002d:00000c18:0003",
        "change_lsn": "0000002d:00000c18:0002",
        "event_serial_no": 2,
    })

    same_commit_earlier_event = Offset({
        "commit_lsn": "0000002d:00000c18:0003",
        "change_lsn": "0000002d:00000c18:0002",
        "event_serial_no": 1,
    })
    later_commit = Offset({
        "commit_lsn": "0000002d:00000c20:0001",
        "change_lsn": "0000002d:00000c18:0001",
        "event_serial_no": 1,
    })
    assert same_commit_earlier_event.is_before_or_at(latest)
    assert not later_commit.is_before_or_at(latest)


def test_mysql_binlog_position_ordering():
    latest = Offset({"file": "mysql-bin.000003", "pos": 154, "row": 1})

    assert Offset({"file": "mysql-bin.000003", "pos": 154, "row": 0}).is_before_or_at(latest)
    assert not Offset({"file": "mysql-bin.000004", "pos": 4, "row": 0}).is_before_or_at(latest)


def test_later_binlog_event_in_same_transaction_is_not_a_duplicate():
    latest = Offset({"file": "mysql-bin.000003", "pos": 154, "event": 2, "row": 1})

    later_event = Offset({"file": "mysql-bin.000003", "pos": 154, "event": 3, "row": 1})
    earlier_event = Offset({"file": "mysql-bin.000003", "pos": 154, "event": 1, "row": 5})
    assert not later_event.is_before_or_at(latest)
    assert earlier_event.is_before_or_at(latest)
    assert latest.position == ("mysql-bin.000003", 154, 2, 1)


def test_binlog_offsets_missing_event_or_row_are_comparable():
    latest = Offset({"file": "mysql-bin.000003", "pos": 154, "event": 1})

    redelivered = Offset({"file": "mysql-bin.000003", "pos": 154, "event": 1, "row": 0})
    group_start = Offset({"file": "mysql-bin.000003", "pos": 154})
    next_event = Offset({"file": "mysql-bin.000003", "pos": 154, "row": 2, "event": 2})
    assert redelivered.is_before_or_at(latest)
    assert group_start.is_before_or_at(latest)
    assert not next_event.is_before_or_at(latest)


def test_offsets_with_different_keys_are_not_comparable():
    latest = Offset({"commit_lsn": "0000002d:00000c18:0003"})
    other = Offset({"commit_lsn": "0000002d:00000c18:0001", "change_lsn": "0000002d:00000c18:0001"})

    assert not other.is_before_or_at(latest)


def test_state_round_trip_keeps_ddl_sent():
    offset = Offset({"lsn": 42, "snapshot": False}, {"dbo.b", "dbo.a"})

    state = offset.as_state()

    assert state == {"source": {"lsn": 42, "snapshot": False}, "ddl_sent": ["dbo.a", "dbo.b"]}
    assert Offset.from_state(state) == offset
    assert Offset.from_state(None) == Offset()


def test_offset_copies_its_inputs():
    source = {"lsn": 1}
    sent = {"dbo.a"}
    offset = Offset(source, sent)
    source["lsn"] = 2
    sent.add("dbo.b")

    assert offset.source_offset == {"lsn": 1}
    assert offset.ddl_sent == {"dbo.a"}
