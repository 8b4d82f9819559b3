import logging
from typing import Iterable, List, Optional, Tuple

import psycopg2
from psycopg2 import sql
from psycopg2.extras import LogicalReplicationConnection

from replicator.cdc_config import SourceConfig
from replicator.cdc_event import ChangeValue, RawChangeRecord, RowSchema, StructuredRow
from replicator.pg_output_parser import PgOutputParser, convert_value, pg_field
from replicator.record_consumer import ChangeEventConsumer, ProcessOutcome

logger = logging.getLogger(__name__)

PRIMARY_KEY_QUERY = """
    SELECT a.attname
    FROM pg_index i
    JOIN pg_attribute a ON a.attrelid = i.indrelid AND a.attnum = ANY(i.indkey)
    WHERE i.indrelid = %s::regclass AND i.indisprimary
    ORDER BY array_position(i.indkey::int2[], a.attnum)
"""

PUBLICATION_TABLES_QUERY = """
    SELECT schemaname, tablename
    FROM pg_publication_tables
    WHERE pubname = %s
    ORDER BY schemaname, tablename
"""


class PostgresChangeSource:
    """
    Log-tailing connector over Postgres logical replication (pgoutput).

    Delivers every change as a raw record to a ChangeEventConsumer and halts
    as soon as the consumer asks it to stop.
    """

    def __init__(self, config: SourceConfig, consumer: ChangeEventConsumer):
        self.config = config
        self.consumer = consumer
        self.connection: Optional[psycopg2.extensions.connection] = None
        self.cursor = None
        self.parser = PgOutputParser(server_name=config.server_name)
        self.running = False
        self.stop_requested = False

    def _connect(self, **kwargs):
        return psycopg2.connect(
            host=self.config.host,
            port=self.config.port,
            user=self.config.user,
            password=self.config.password,
            database=self.config.database,
            **kwargs,
        )

    def connect(self):
        """Establish a logical replication connection"""
        self.connection = self._connect(connection_factory=LogicalReplicationConnection)
        self.cursor = self.connection.cursor()
        logger.info(
            f"Connected to PostgreSQL at {self.config.host}:{self.config.port}/{self.config.database}"
        )

    def create_replication_slot(self):
        """Create replication slot if it doesn't exist"""
        try:
            self.cursor.create_replication_slot(
                slot_name=self.config.slot_name, output_plugin="pgoutput"
            )
            logger.info(f"Created replication slot: {self.config.slot_name}")
        except psycopg2.errors.DuplicateObject:
            logger.info(f"Replication slot '{self.config.slot_name}' already exists")
        except Exception as e:
            logger.error(f"Error creating slot: {e}")
            raise

    def drop_replication_slot(self) -> bool:
        """
        Drop the slot so the server stops retaining WAL for it.

        The next run then starts from a new slot, so existing data has to be
        snapshotted again. Returns False if the slot could not be dropped.
        """
        if self.cursor is None:
            logger.warning(f"Not connected, cannot drop slot '{self.config.slot_name}'")
            return False
        try:
            self.cursor.drop_replication_slot(self.config.slot_name)
        except psycopg2.Error as e:
            logger.error(f"Unable to drop replication slot '{self.config.slot_name}': {e}")
            return False
        logger.info(f"Dropped replication slot '{self.config.slot_name}'")
        return True

    def publication_tables(self, conn) -> List[Tuple[str, str]]:
        with conn.cursor() as cur:
            cur.execute(PUBLICATION_TABLES_QUERY, (self.config.publication_name,))
            return [(schema, table) for schema, table in cur.fetchall()]

    def snapshot(self, tables: Optional[Iterable[Tuple[str, str]]] = None) -> bool:
        """
        Deliver the existing rows of `tables` as snapshot reads.

        Defaults to every table of the publication that the consumer
        replicates. Rows changed while the snapshot runs are delivered again
        by the stream once replication starts. Returns False if the consumer
        requested a stop.
        """
        conn = self._connect()
        try:
            if tables is None:
                tables = [
                    (schema, table)
                    for schema, table in self.publication_tables(conn)
                    if self.consumer.tables.is_of_interest(f"{schema}.{table}")
                ]
            for schema, table in tables:
                if not self._snapshot_table(conn, schema, table):
                    return False
        finally:
            conn.close()
        return True

    def _snapshot_table(self, conn, schema: str, table: str) -> bool:
        name = f"{self.config.server_name}.{schema}.{table}"
        with conn.cursor() as cur:
            cur.execute(PRIMARY_KEY_QUERY, (f'"{schema}"."{table}"',))
            key_columns = [r[0] for r in cur.fetchall()]

            cur.execute(
                sql.SQL("SELECT * FROM {}.{}").format(sql.Identifier(schema), sql.Identifier(table))
            )
            fields = tuple(
                pg_field(col.name, col.type_code, optional=col.name not in key_columns)
                for col in cur.description
            )
            row_schema = RowSchema(f"{name}.Value", fields)
            key_schema = RowSchema(f"{name}.Key", tuple(f for f in fields if f.name in key_columns))

            logger.info(f"Snapshotting {schema}.{table}")
            count = 0
            for values in cur:
                if self.stop_requested:
                    logger.info(f"Snapshot of {schema}.{table} stopped after {count} rows")
                    return False
                row = StructuredRow(
                    row_schema, {f.name: convert_value(v, f) for f, v in zip(fields, values)}
                )
                key = None
                if key_columns:
                    key = StructuredRow(key_schema, {c: row.get(c) for c in key_columns})
                record = RawChangeRecord(
                    topic=name,
                    key=key,
                    value=ChangeValue(op="r", after=row),
                    source_offset={"lsn": 0, "snapshot": True},
                )
                if self.consumer.accept(record) is ProcessOutcome.STOP_REQUESTED:
                    logger.info(f"Snapshot of {schema}.{table} stopped after {count} rows")
                    return False
                count += 1
            logger.info(f"Snapshot of {schema}.{table} delivered {count} rows")
        return True

    def start_replication(self):
        """Stream changes into the consumer until stopped"""
        if self.stop_requested:
            logger.info("Stop requested, not starting replication")
            return
        self.running = True

        self.cursor.start_replication(
            slot_name=self.config.slot_name,
            decode=False,  # Binary protocol
            options={
                "proto_version": "1",
                "publication_names": self.config.publication_name,
            },
        )

        logger.info("=" * 50)
        logger.info("Change source started! Listening for changes...")
        logger.info("=" * 50)

        def consume_message(msg):
            if not self.running:
                raise StopIteration

            record = self.parser.parse_message(msg.payload, lsn=msg.data_start)
            if record is not None:
                outcome = self.consumer.accept(record)
                if outcome is ProcessOutcome.STOP_REQUESTED:
                    self.running = False
                    raise StopIteration

            # acknowledge only what the consumer has handed downstream
            msg.cursor.send_feedback(flush_lsn=msg.data_start)

        try:
            self.cursor.consume_stream(consume_message, keepalive_interval=10)
        except StopIteration:
            logger.info("Replication stream stopped")

    def stop(self):
        """
        Ask the source to halt; safe to call from a signal handler.

        A running snapshot ends before its next row and the stream ends
        before its next message. A stop requested before replication starts
        keeps it from starting.
        """
        logger.info("Stop signal received")
        self.stop_requested = True
        self.running = False

    def close(self):
        """Close the connection"""
        self.running = False
        if self.cursor:
            self.cursor.close()
        if self.connection:
            self.connection.close()
        logger.info("Connection closed")
