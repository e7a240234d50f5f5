"""Tests for TransferService operations against in-memory servers."""

from __future__ import annotations

import gzip
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from dbtransfer.exceptions import (
    ExecutionError,
    ParseError,
    TransferCancelled,
    TransferError,
)
from dbtransfer.models.transfer import (
    ConflictAction,
    DatabaseLocator,
    ErrorPolicy,
    ProgressEvent,
    TransferOptions,
    WarningEvent,
)
from dbtransfer.services.conflict_resolver import decision_table
from dbtransfer.services.transfer_service import TransferService
from dbtransfer.streams.codec import open_writer
from dbtransfer.utils.cancellation import CancellationToken
from tests.fakes import FakeServer, column, fake_connector, foreign_key, table


def customers_table():
    return table(
        "customers",
        [
            column("id"),
            column("name", "varchar(64)", "varchar", length=64),
            column("active", "tinyint(1)", "boolean"),
        ],
    )


def orders_table():
    return table(
        "orders",
        [column("id"), column("customer_id")],
        foreign_keys=[foreign_key("orders", "customer_id", "customers")],
    )


@pytest.fixture
def shop(mariadb_server):
    """MariaDB server with a ``shop`` database of customers and orders."""
    mariadb_server.add_table("shop", customers_table(), [(1, "Ann", 1), (2, "Bob", 0)])
    mariadb_server.add_table("shop", orders_table(), [(10, 1)])
    return mariadb_server


def locator(server: FakeServer, database: str, table_name=None) -> DatabaseLocator:
    return DatabaseLocator(server.config, database, table_name)


def progress_of(events, table_name):
    return [
        (e.current, e.total)
        for e in events
        if isinstance(e, ProgressEvent) and e.table == table_name
    ]


class TestExport:
    """Test cases for TransferService.export."""

    @pytest.mark.asyncio
    async def test_sql_dump(self, shop, tmp_path, events):
        path = tmp_path / "shop.sql"
        service = TransferService(connector=fake_connector(shop))

        stats = await service.export(
            TransferOptions(source=locator(shop, "shop"), destination=path, progress=events.append)
        )

        text = path.read_text()
        assert text.index("CREATE TABLE `customers`") < text.index("CREATE TABLE `orders`")
        assert (
            "INSERT INTO `customers` (`id`, `name`, `active`) VALUES (1,'Ann',1),(2,'Bob',0);\n"
            in text
        )
        assert text.index("INSERT INTO `orders`") < text.index("ALTER TABLE `orders` ADD CONSTRAINT")
        assert text.index("ALTER TABLE `orders`") < text.index("SET FOREIGN_KEY_CHECKS=1;")
        assert text.startswith("-- dbtransfer SQL dump\n")
        assert stats.tables_transferred == 2
        assert stats.rows_transferred == 3
        assert stats.bytes_written == path.stat().st_size
        assert progress_of(events, "customers")[-1] == (2, 2)
        assert shop.clients[0].closed

    @pytest.mark.asyncio
    async def test_compressed_filtered(self, shop, tmp_path):
        path = tmp_path / "shop.sql.gz"
        service = TransferService(connector=fake_connector(shop))

        stats = await service.export(
            TransferOptions(
                source=locator(shop, "shop"),
                destination=path,
                where="id > 1",
                tables=("customers",),
            )
        )

        with gzip.open(path, "rt") as f:
            text = f.read()
        assert "VALUES (2,'Bob',0);" in text
        assert "'Ann'" not in text
        assert "`orders`" not in text
        assert stats.rows_transferred == 1

    @pytest.mark.asyncio
    async def test_structure_only_with_variables(self, shop, tmp_path):
        path = tmp_path / "shop.sql"
        service = TransferService(connector=fake_connector(shop))

        stats = await service.export(
            TransferOptions(
                source=locator(shop, "shop"),
                destination=path,
                include_data=False,
                include_vars=True,
                drop_if_exists=True,
            )
        )

        text = path.read_text()
        assert "SET SESSION foreign_key_checks = 1;" in text
        assert "INSERT INTO" not in text
        assert text.index("DROP TABLE IF EXISTS `orders`") < text.index(
            "DROP TABLE IF EXISTS `customers`"
        )
        assert stats.rows_transferred == 0

    @pytest.mark.asyncio
    async def test_missing_table(self, shop, tmp_path):
        service = TransferService(connector=fake_connector(shop))

        with pytest.raises(ExecutionError, match="not found") as exc_info:
            await service.export(
                TransferOptions(
                    source=locator(shop, "shop", "nope"), destination=tmp_path / "x.sql"
                )
            )
        assert exc_info.value.stats is not None

    @pytest.mark.asyncio
    async def test_postgres_archive_uses_pg_dump(self, postgres_server, tmp_path):
        bridge = MagicMock()
        bridge.dump = AsyncMock()
        service = TransferService(connector=fake_connector(postgres_server), bridge=bridge)
        path = tmp_path / "shop.dump"

        await service.export(
            TransferOptions(source=locator(postgres_server, "shop"), destination=path)
        )

        bridge.dump.assert_awaited_once()
        args, kwargs = bridge.dump.call_args
        assert args == (postgres_server.config, path)
        assert kwargs["database"] == "shop"
        assert kwargs["fmt"] == "custom"
        assert postgres_server.clients == []

    @pytest.mark.asyncio
    async def test_plain_pg_dump_cannot_compress(self, postgres_server, tmp_path):
        service = TransferService(connector=fake_connector(postgres_server), bridge=MagicMock())

        with pytest.raises(TransferError, match="compression codec"):
            await service.export(
                TransferOptions(
                    source=locator(postgres_server, "shop"),
                    destination=tmp_path / "shop.sql.gz",
                    use_native_tool=True,
                )
            )

    @pytest.mark.asyncio
    async def test_destination_must_be_path(self, shop):
        service = TransferService(connector=fake_connector(shop))

        with pytest.raises(TransferError, match="must be a file path"):
            await service.export(
                TransferOptions(source=locator(shop, "shop"), destination=locator(shop, "x"))
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("batch_size,expected", [(1, [1, 1, 1, 1, 1]), (2, [2, 2, 1]), (5, [5])])
    async def test_rows_per_insert_follow_batch_size(
        self, mariadb_server, tmp_path, batch_size, expected
    ):
        mariadb_server.add_table("shop", table("items"), [(i, f"item{i}") for i in range(1, 6)])
        path = tmp_path / "items.sql"
        service = TransferService(connector=fake_connector(mariadb_server))

        stats = await service.export(
            TransferOptions(
                source=locator(mariadb_server, "shop"), destination=path, batch_size=batch_size
            )
        )

        inserts = [line for line in path.read_text().splitlines() if line.startswith("INSERT")]
        assert [line.count("),(") + 1 for line in inserts] == expected
        assert stats.rows_transferred == 5

    @pytest.mark.asyncio
    async def test_selected_variables(self, shop, tmp_path):
        path = tmp_path / "shop.sql"
        service = TransferService(connector=fake_connector(shop))

        await service.export(
            TransferOptions(
                source=locator(shop, "shop"),
                destination=path,
                include_data=False,
                include_vars_list=("unique_checks",),
            )
        )

        text = path.read_text()
        assert "SET SESSION unique_checks = 1;" in text
        assert "SET SESSION foreign_key_checks" not in text

    @pytest.mark.asyncio
    async def test_invalid_variable_name(self, shop, tmp_path):
        path = tmp_path / "shop.sql"
        service = TransferService(connector=fake_connector(shop))

        with pytest.raises(TransferError, match="Invalid variable name"):
            await service.export(
                TransferOptions(
                    source=locator(shop, "shop"),
                    destination=path,
                    include_vars_list=("sql_mode; DROP",),
                )
            )
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_close_failure_keeps_original_error(self, shop, tmp_path):
        token = CancellationToken()
        token.cancel()
        service = TransferService(connector=fake_connector(shop))

        def failing_writer(path, codec=None):
            writer = open_writer(path, codec)
            writer._stream.close = MagicMock(side_effect=[OSError("disk full"), None])
            return writer

        with patch("dbtransfer.services.transfer_service.open_writer", side_effect=failing_writer):
            with pytest.raises(TransferCancelled):
                await service.export(
                    TransferOptions(
                        source=locator(shop, "shop"),
                        destination=tmp_path / "shop.sql.gz",
                        cancel_token=token,
                    )
                )


DUMP = """\
-- test dump
START TRANSACTION;
CREATE TABLE `t` (`id` int);
INSERT INTO `t` VALUES (1);
INSERT INTO `t` VALUES (2);
COMMIT;
"""


@pytest.fixture
def dump_file(tmp_path):
    path = tmp_path / "dump.sql"
    path.write_text(DUMP)
    return path


def data_statements(client):
    return [s for s in client.committed if not s.startswith("SET")]


class TestImport:
    """Test cases for TransferService.import_dump."""

    @pytest.mark.asyncio
    async def test_executes_statements(self, mariadb_server, dump_file):
        mariadb_server.add_database("shop")
        service = TransferService(connector=fake_connector(mariadb_server))

        stats = await service.import_dump(
            TransferOptions(source=dump_file, destination=locator(mariadb_server, "shop"))
        )

        client = mariadb_server.clients[0]
        assert data_statements(client) == [
            "CREATE TABLE `t` (`id` int)",
            "INSERT INTO `t` VALUES (1)",
            "INSERT INTO `t` VALUES (2)",
        ]
        assert "t" in mariadb_server.databases["shop"]
        assert client.executed[0] == "SET SESSION foreign_key_checks = 0"
        assert client.variables["foreign_key_checks"] == "1"
        assert stats.tables_transferred == 1
        assert stats.statements_executed == 3
        assert stats.bytes_read == dump_file.stat().st_size
        assert client.closed

    @pytest.mark.asyncio
    async def test_drop_before_create(self, mariadb_server, dump_file):
        mariadb_server.add_table("shop", table("t"))
        service = TransferService(connector=fake_connector(mariadb_server))

        await service.import_dump(
            TransferOptions(
                source=dump_file, destination=locator(mariadb_server, "shop"), drop_if_exists=True
            )
        )

        executed = mariadb_server.clients[0].executed
        position = executed.index("CREATE TABLE `t` (`id` int)")
        assert executed[position - 1] == "DROP TABLE IF EXISTS `t`"

    @pytest.mark.asyncio
    async def test_repeated_import_with_drop(self, mariadb_server, dump_file):
        mariadb_server.add_database("shop")
        service = TransferService(connector=fake_connector(mariadb_server))
        options = TransferOptions(
            source=dump_file, destination=locator(mariadb_server, "shop"), drop_if_exists=True
        )

        first = await service.import_dump(options)
        tables_after_first = list(mariadb_server.databases["shop"])
        second = await service.import_dump(options)

        first_client, second_client = mariadb_server.clients
        assert list(mariadb_server.databases["shop"]) == tables_after_first == ["t"]
        assert data_statements(second_client) == data_statements(first_client)
        assert second.statements_executed == first.statements_executed
        assert second.errors_skipped == 0

    @pytest.mark.asyncio
    async def test_resume_from_byte(self, mariadb_server, dump_file, events):
        mariadb_server.add_database("shop")
        service = TransferService(connector=fake_connector(mariadb_server))
        offset = DUMP.index("INSERT INTO `t` VALUES (2)")

        stats = await service.import_dump(
            TransferOptions(
                source=dump_file,
                destination=locator(mariadb_server, "shop"),
                resume_from_byte=offset,
                progress=events.append,
            )
        )

        assert data_statements(mariadb_server.clients[0]) == ["INSERT INTO `t` VALUES (2)"]
        assert stats.statements_executed == 1
        assert stats.bytes_read == dump_file.stat().st_size
        progress = [(e.current, e.total) for e in events if isinstance(e, ProgressEvent)]
        assert progress[-1] == (len(DUMP), len(DUMP))

    @pytest.mark.asyncio
    async def test_resume_needs_uncompressed_dump(self, mariadb_server, tmp_path):
        path = tmp_path / "dump.sql.gz"
        path.write_bytes(gzip.compress(DUMP.encode()))
        mariadb_server.add_database("shop")
        service = TransferService(connector=fake_connector(mariadb_server))

        with pytest.raises(TransferError, match="uncompressed SQL dump"):
            await service.import_dump(
                TransferOptions(
                    source=path, destination=locator(mariadb_server, "shop"), resume_from_byte=10
                )
            )
        assert mariadb_server.clients == []

    @pytest.mark.asyncio
    async def test_rename_db(self, mariadb_server, tmp_path):
        path = tmp_path / "dump.sql"
        path.write_text(
            "CREATE DATABASE IF NOT EXISTS `orig`;\nUSE `orig`;\nCREATE TABLE `t` (`id` int);\n"
        )
        service = TransferService(connector=fake_connector(mariadb_server))

        await service.import_dump(
            TransferOptions(
                source=path,
                destination=locator(mariadb_server, "ignored"),
                rename_db="renamed",
                create_db=True,
            )
        )

        assert "t" in mariadb_server.databases["renamed"]
        assert "orig" not in mariadb_server.databases
        assert not any("`orig`" in s for s in mariadb_server.statements())

    @pytest.mark.asyncio
    async def test_missing_database(self, mariadb_server, dump_file):
        service = TransferService(connector=fake_connector(mariadb_server))

        with pytest.raises(ExecutionError, match="does not exist"):
            await service.import_dump(
                TransferOptions(source=dump_file, destination=locator(mariadb_server, "shop"))
            )

    @pytest.mark.asyncio
    async def test_stop_reports_partial_stats(self, mariadb_server, tmp_path):
        path = tmp_path / "dump.sql"
        path.write_text(DUMP.replace("VALUES (2)", "VALUES ('bad')"))
        mariadb_server.add_database("shop")
        mariadb_server.fail_on = ["bad"]
        service = TransferService(connector=fake_connector(mariadb_server))

        with pytest.raises(ExecutionError) as exc_info:
            await service.import_dump(
                TransferOptions(
                    source=path, destination=locator(mariadb_server, "shop"), batch_size=1
                )
            )

        assert exc_info.value.statement == "INSERT INTO `t` VALUES ('bad')"
        assert exc_info.value.stats.statements_executed == 2
        assert mariadb_server.clients[0].variables["foreign_key_checks"] == "1"

    @pytest.mark.asyncio
    async def test_continue_skips(self, mariadb_server, tmp_path, events):
        path = tmp_path / "dump.sql"
        path.write_text(DUMP.replace("VALUES (2)", "VALUES ('bad')"))
        mariadb_server.add_database("shop")
        mariadb_server.fail_on = ["bad"]
        service = TransferService(connector=fake_connector(mariadb_server))

        stats = await service.import_dump(
            TransferOptions(
                source=path,
                destination=locator(mariadb_server, "shop"),
                error_policy=ErrorPolicy.CONTINUE,
                progress=events.append,
            )
        )

        assert stats.errors_skipped == 1
        assert stats.skipped[0].statement == "INSERT INTO `t` VALUES ('bad')"
        assert stats.statements_executed == 2

    @pytest.mark.asyncio
    async def test_session_variables(self, mariadb_server, dump_file):
        mariadb_server.add_database("shop")
        service = TransferService(connector=fake_connector(mariadb_server))

        await service.import_dump(
            TransferOptions(
                source=dump_file,
                destination=locator(mariadb_server, "shop"),
                session_variables=(("sql_mode", "ANSI"),),
                disable_foreign_keys=False,
            )
        )

        assert mariadb_server.clients[0].executed[0] == "SET SESSION sql_mode = 'ANSI'"

    @pytest.mark.asyncio
    async def test_copy_from_stdin_rejected(self, postgres_server, tmp_path):
        path = tmp_path / "pg.sql"
        path.write_text("COPY public.t (id) FROM stdin;\n1\n2\n\\.\n")
        postgres_server.add_database("shop")
        service = TransferService(connector=fake_connector(postgres_server))

        with pytest.raises(ParseError, match="use_native_tool"):
            await service.import_dump(
                TransferOptions(source=path, destination=locator(postgres_server, "shop"))
            )

    @pytest.mark.asyncio
    async def test_native_archive_uses_pg_restore(self, postgres_server, tmp_path):
        path = tmp_path / "shop.dump"
        path.write_bytes(b"PGDMP")
        bridge = MagicMock()
        bridge.restore = AsyncMock()
        service = TransferService(connector=fake_connector(postgres_server), bridge=bridge)

        await service.import_dump(
            TransferOptions(source=path, destination=locator(postgres_server, "shop"), jobs=4)
        )

        bridge.restore.assert_awaited_once()
        _, kwargs = bridge.restore.call_args
        assert kwargs["database"] == "shop"
        assert kwargs["jobs"] == 4
        assert kwargs["clean"] is False
        assert kwargs["disable_triggers"] is True

    @pytest.mark.asyncio
    async def test_restore_native_creates_database(self, postgres_server, tmp_path):
        path = tmp_path / "shop.tar"
        path.write_bytes(b"\0" * 512)
        bridge = MagicMock()
        bridge.restore = AsyncMock()
        service = TransferService(connector=fake_connector(postgres_server), bridge=bridge)

        await service.restore_native(
            TransferOptions(
                source=path,
                destination=locator(postgres_server, "shop"),
                create_db=True,
                drop_if_exists=True,
            )
        )

        assert "shop" in postgres_server.databases
        assert bridge.restore.call_args.kwargs["clean"] is True

    @pytest.mark.asyncio
    async def test_round_trip(self, shop, tmp_path):
        """Test a dump exported from one server imports into another."""
        path = tmp_path / "shop.sql.zst"
        other = FakeServer("mariadb", host="other")
        other.add_database("copy")
        service = TransferService(connector=fake_connector(shop, other))

        await service.export(TransferOptions(source=locator(shop, "shop"), destination=path))
        stats = await service.import_dump(
            TransferOptions(source=path, destination=locator(other, "copy"))
        )

        assert set(other.databases["copy"]) == {"customers", "orders"}
        assert (
            "INSERT INTO `customers` (`id`, `name`, `active`) VALUES (1,'Ann',1),(2,'Bob',0)"
            in other.committed()
        )
        assert stats.tables_transferred == 2


class TestClone:
    """Test cases for TransferService.clone."""

    @pytest.mark.asyncio
    async def test_mariadb_to_postgres(self, shop, postgres_server, events):
        service = TransferService(connector=fake_connector(shop, postgres_server))

        stats = await service.clone(
            TransferOptions(
                source=locator(shop, "shop"),
                destination=locator(postgres_server, "shop_copy"),
                create_db=True,
                progress=events.append,
            )
        )

        assert postgres_server.rows("shop_copy", "customers") == [(1, "Ann", True), (2, "Bob", False)]
        assert postgres_server.rows("shop_copy", "orders") == [(10, 1)]
        target = postgres_server.clients[0]
        assert target.executed[0] == (
            "CREATE DATABASE \"shop_copy\" ENCODING 'UTF8' TEMPLATE template0"
        )
        assert target.executed[1] == "SET session_replication_role = 'replica'"
        assert target.executed[-2].startswith('ALTER TABLE "orders" ADD CONSTRAINT')
        assert target.executed[-1] == "SET session_replication_role = 'origin'"
        assert "shop_copy: collation 'utf8mb4_general_ci' omitted" in stats.warnings
        translation = [e.message for e in events if isinstance(e, WarningEvent) and e.is_translation]
        assert "shop_copy: collation 'utf8mb4_general_ci' omitted" in translation
        assert stats.tables_transferred == 2
        assert stats.rows_transferred == 3
        assert progress_of(events, "customers")[-1] == (2, 2)
        assert target.closed and shop.clients[0].closed

    @pytest.mark.asyncio
    async def test_structure_only_subset(self, shop):
        other = FakeServer("mariadb", host="other")
        other.add_database("copy")
        service = TransferService(connector=fake_connector(shop, other))

        stats = await service.clone(
            TransferOptions(
                source=locator(shop, "shop"),
                destination=locator(other, "copy"),
                tables=("customers",),
                include_data=False,
            )
        )

        assert list(other.databases["copy"]) == ["customers"]
        assert other.rows("copy", "customers") == []
        assert stats.rows_transferred == 0
        assert stats.tables_transferred == 1

    @pytest.mark.asyncio
    async def test_same_database(self, shop):
        service = TransferService(connector=fake_connector(shop))

        with pytest.raises(TransferError, match="same database"):
            await service.clone(
                TransferOptions(source=locator(shop, "shop"), destination=locator(shop, "shop"))
            )
        assert shop.clients == []

    @pytest.mark.asyncio
    async def test_missing_destination(self, shop, postgres_server):
        service = TransferService(connector=fake_connector(shop, postgres_server))

        with pytest.raises(ExecutionError, match="does not exist"):
            await service.clone(
                TransferOptions(
                    source=locator(shop, "shop"), destination=locator(postgres_server, "nope")
                )
            )
        assert all(client.closed for client in shop.clients + postgres_server.clients)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("policy", [ErrorPolicy.STOP, ErrorPolicy.CONTINUE])
    async def test_existing_table_kept(self, shop, policy):
        shop.add_table("shop_copy", table("customers"), [(99, "Precious")])
        service = TransferService(connector=fake_connector(shop))

        with pytest.raises(ExecutionError, match="customers; enable drop_if_exists"):
            await service.clone(
                TransferOptions(
                    source=locator(shop, "shop"),
                    destination=locator(shop, "shop_copy"),
                    error_policy=policy,
                )
            )

        assert list(shop.databases["shop_copy"]) == ["customers"]
        assert shop.rows("shop_copy", "customers") == [(99, "Precious")]
        assert not any(sql.startswith("DROP") for sql in shop.statements())

    @pytest.mark.asyncio
    async def test_existing_table_replaced_with_drop(self, shop):
        shop.add_table("shop_copy", table("customers"), [(99, "Precious")])
        service = TransferService(connector=fake_connector(shop))

        await service.clone(
            TransferOptions(
                source=locator(shop, "shop"),
                destination=locator(shop, "shop_copy"),
                drop_if_exists=True,
            )
        )

        assert shop.rows("shop_copy", "customers") == [(1, "Ann", 1), (2, "Bob", 0)]
        assert shop.rows("shop_copy", "orders") == [(10, 1)]

    @pytest.mark.asyncio
    async def test_cancelled(self, shop, postgres_server):
        token = CancellationToken()
        token.cancel()
        postgres_server.add_database("shop_copy")
        service = TransferService(connector=fake_connector(shop, postgres_server))

        with pytest.raises(TransferCancelled) as exc_info:
            await service.clone(
                TransferOptions(
                    source=locator(shop, "shop"),
                    destination=locator(postgres_server, "shop_copy"),
                    cancel_token=token,
                )
            )

        assert exc_info.value.stats.tables_transferred == 0
        assert postgres_server.databases["shop_copy"] == {}
        assert postgres_server.clients[0].variables["session_replication_role"] == "origin"


class TestCopyTable:
    """Test cases for TransferService.copy_table."""

    @pytest.fixture
    def server(self, mariadb_server):
        mariadb_server.add_table("shop", table("customers"), [(1, "Ann"), (2, "Bob"), (3, "Cy")])
        mariadb_server.add_database("archive")
        return mariadb_server

    @pytest.mark.asyncio
    async def test_filtered_and_renamed(self, server):
        service = TransferService(connector=fake_connector(server))

        stats = await service.copy_table(
            TransferOptions(
                source=locator(server, "shop", "customers"),
                destination=locator(server, "archive", "old_customers"),
                where="id >= 2",
            )
        )

        assert server.rows("archive", "old_customers") == [(2, "Bob"), (3, "Cy")]
        assert stats.rows_transferred == 2
        assert stats.tables_transferred == 1

    @pytest.mark.asyncio
    async def test_onto_itself(self, server):
        service = TransferService(connector=fake_connector(server))

        with pytest.raises(TransferError, match="onto itself"):
            await service.copy_table(
                TransferOptions(
                    source=locator(server, "shop", "customers"), destination=locator(server, "shop")
                )
            )

    @pytest.mark.asyncio
    async def test_same_database_new_name(self, server):
        service = TransferService(connector=fake_connector(server))

        await service.copy_table(
            TransferOptions(
                source=locator(server, "shop", "customers"),
                destination=locator(server, "shop", "customers_backup"),
            )
        )

        assert len(server.rows("shop", "customers_backup")) == 3

    @pytest.mark.asyncio
    async def test_existing_table(self, server):
        server.add_table("archive", table("customers"), [(9, "Zed")])
        service = TransferService(connector=fake_connector(server))

        with pytest.raises(ExecutionError, match="already exists"):
            await service.copy_table(
                TransferOptions(
                    source=locator(server, "shop", "customers"),
                    destination=locator(server, "archive"),
                )
            )
        assert server.rows("archive", "customers") == [(9, "Zed")]

    @pytest.mark.asyncio
    async def test_append_without_schema(self, server):
        server.add_table("archive", table("customers"), [(9, "Zed")])
        service = TransferService(connector=fake_connector(server))

        await service.copy_table(
            TransferOptions(
                source=locator(server, "shop", "customers"),
                destination=locator(server, "archive"),
                include_schema=False,
                where="id = 1",
            )
        )

        assert server.rows("archive", "customers") == [(9, "Zed"), (1, "Ann")]

    @pytest.mark.asyncio
    async def test_replace(self, server):
        server.add_table("archive", table("customers"), [(9, "Zed")])
        service = TransferService(connector=fake_connector(server))

        await service.copy_table(
            TransferOptions(
                source=locator(server, "shop", "customers"),
                destination=locator(server, "archive"),
                drop_if_exists=True,
            )
        )

        assert server.rows("archive", "customers") == [(1, "Ann"), (2, "Bob"), (3, "Cy")]

    @pytest.mark.asyncio
    async def test_no_table(self, server):
        service = TransferService(connector=fake_connector(server))

        with pytest.raises(TransferError, match="No source table"):
            await service.copy_table(
                TransferOptions(source=locator(server, "shop"), destination=locator(server, "archive"))
            )


class TestMerge:
    """Test cases for TransferService.merge."""

    @staticmethod
    def populate(server):
        server.add_table("shop_a", table("customers"), [(1, "Ann")])
        server.add_table("shop_a", table("products"), [(1, "Pen")])
        server.add_table("shop_b", table("customers"), [(2, "Bob")])
        server.add_table("shop_b", table("products"), [(2, "Ink")])
        server.add_table("merged", table("customers"), [(0, "Root")])
        return server

    @pytest.fixture
    def server(self, mariadb_server):
        return self.populate(mariadb_server)

    def options(self, server, sources=("shop_a", "shop_b"), **kwargs):
        return TransferOptions(
            source=locator(server, sources[0]),
            destination=locator(server, "merged"),
            merge_sources=tuple(sources),
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_skip_by_default(self, server):
        service = TransferService(connector=fake_connector(server))

        stats = await service.merge(self.options(server))

        assert server.rows("merged", "customers") == [(0, "Root")]
        assert server.rows("merged", "products") == [(1, "Pen")]
        assert stats.tables_transferred == 1

    @pytest.mark.asyncio
    async def test_decision_asked_once_per_table_and_source(self, server):
        decide = MagicMock(return_value=ConflictAction.SKIP)
        service = TransferService(connector=fake_connector(server))

        await service.merge(self.options(server, conflict_decision=decide))

        assert [c.args[:2] for c in decide.call_args_list] == [
            ("customers", "shop_a"),
            ("customers", "shop_b"),
            ("products", "shop_b"),
        ]
        state = decide.call_args_list[0].args[2]
        assert state.exists
        assert state.columns == (("id", "integer"), ("name", "varchar"))

    @pytest.mark.asyncio
    async def test_same_decisions_give_same_result(self):
        def end_state(server):
            return {
                name: (stored.ddl or stored.schema.structure(), sorted(stored.rows))
                for name, stored in server.databases["merged"].items()
            }

        decide = decision_table(
            {"shop_b.customers": "rename", "products": "append"}, default="skip"
        )
        states = []
        for _ in range(2):
            server = self.populate(FakeServer("mariadb"))
            service = TransferService(connector=fake_connector(server))
            stats = await service.merge(self.options(server, conflict_decision=decide))
            states.append((end_state(server), stats.tables_transferred, stats.rows_transferred))

        assert states[0] == states[1]
        tables = states[0][0]
        assert sorted(tables) == ["customers", "customers_shop_b", "products"]
        assert tables["products"][1] == [(1, "Pen"), (2, "Ink")]

    @pytest.mark.asyncio
    async def test_append(self, server):
        service = TransferService(connector=fake_connector(server))

        stats = await service.merge(
            self.options(server, conflict_decision=decision_table({}, default="append"))
        )

        assert server.rows("merged", "customers") == [(0, "Root"), (1, "Ann"), (2, "Bob")]
        assert server.rows("merged", "products") == [(1, "Pen"), (2, "Ink")]
        assert stats.tables_transferred == 4
        assert stats.rows_transferred == 4

    @pytest.mark.asyncio
    async def test_append_mismatch_skips_table(self, server, events):
        server.add_table(
            "merged", table("customers", [column("id"), column("name", "text", "text")]), [(0, "Root")]
        )
        service = TransferService(connector=fake_connector(server))

        stats = await service.merge(
            self.options(
                server,
                conflict_decision=decision_table({"customers": "append"}, default="skip"),
                progress=events.append,
            )
        )

        assert server.rows("merged", "customers") == [(0, "Root")]
        assert server.rows("merged", "products") == [(1, "Pen")]
        assert stats.errors_skipped == 2
        assert all(unit.table == "customers" for unit in stats.skipped)
        assert "Cannot append to customers" in stats.skipped[0].error

    @pytest.mark.asyncio
    async def test_replace(self, server):
        service = TransferService(connector=fake_connector(server))

        await service.merge(
            self.options(server, sources=("shop_a",), conflict_decision=decision_table({}, "replace"))
        )

        assert server.rows("merged", "customers") == [(1, "Ann")]
        assert "DROP TABLE IF EXISTS `customers`" in server.statements()

    @pytest.mark.asyncio
    async def test_rename(self, server):
        service = TransferService(connector=fake_connector(server))

        await service.merge(self.options(server, conflict_decision=decision_table({}, "rename")))

        assert server.rows("merged", "customers") == [(0, "Root")]
        assert server.rows("merged", "customers_shop_a") == [(1, "Ann")]
        assert server.rows("merged", "customers_shop_b") == [(2, "Bob")]
        assert server.rows("merged", "products") == [(1, "Pen")]
        assert server.rows("merged", "products_shop_b") == [(2, "Ink")]

    @pytest.mark.asyncio
    async def test_rename_collision(self, server):
        server.add_table("merged", table("customers_shop_a"))
        service = TransferService(connector=fake_connector(server))

        stats = await service.merge(
            self.options(server, sources=("shop_a",), conflict_decision=decision_table({}, "rename"))
        )

        assert stats.errors_skipped == 1
        assert stats.skipped[0].table == "customers"
        assert server.rows("merged", "products") == [(1, "Pen")]

    @pytest.mark.asyncio
    async def test_foreign_key_to_existing_table(self, server):
        server.add_table("shop_a", orders_table(), [(10, 0)])
        service = TransferService(connector=fake_connector(server))

        await service.merge(self.options(server, sources=("shop_a",)))

        assert any(
            s.startswith("ALTER TABLE `orders` ADD CONSTRAINT `fk_orders_customer_id`")
            for s in server.statements()
        )

    @pytest.mark.asyncio
    async def test_table_subset(self, server):
        server.add_table("shop_a", table("orders"), [(5, "x")])
        service = TransferService(connector=fake_connector(server))

        stats = await service.merge(self.options(server, tables=("orders",)))

        assert server.rows("merged", "orders") == [(5, "x")]
        assert "products" not in server.databases["merged"]
        assert "None of the selected tables exist in shop_b" in stats.warnings

    @pytest.mark.asyncio
    async def test_source_is_destination(self, server):
        service = TransferService(connector=fake_connector(server))

        with pytest.raises(TransferError, match="is the destination"):
            await service.merge(self.options(server, sources=("shop_a", "merged")))


class TestOptions:
    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            TransferOptions(batch_size=0)

    def test_invalid_jobs(self):
        with pytest.raises(ValueError):
            TransferOptions(jobs=0)

    def test_negative_resume_offset(self):
        with pytest.raises(ValueError, match="resume_from_byte"):
            TransferOptions(resume_from_byte=-1)
