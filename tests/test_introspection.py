"""Unit tests for schema introspection and DDL planning."""

from __future__ import annotations

import pytest

from dbtransfer.dialects import MariaDBDialect, PostgresDialect
from dbtransfer.exceptions import ExecutionError
from dbtransfer.services.introspection import SchemaIntrospector
from tests.fakes import column, foreign_key, table


def shop_tables():
    customers = table("customers")
    orders = table(
        "orders",
        [column("id"), column("customer_id")],
        foreign_keys=[foreign_key("orders", "customer_id", "customers")],
    )
    return customers, orders


class TestDescribeTables:
    """Test cases for SchemaIntrospector.describe_tables."""

    @pytest.mark.asyncio
    async def test_dependency_order(self, mariadb_server):
        """Test referenced tables are described before referencing ones."""
        customers, orders = shop_tables()
        mariadb_server.add_table("shop", orders)
        mariadb_server.add_table("shop", customers)
        client = await mariadb_server.connect(mariadb_server.config, "shop")

        schemas = await SchemaIntrospector().describe_tables(client)

        assert [s.name for s in schemas] == ["customers", "orders"]

    @pytest.mark.asyncio
    async def test_subset(self, mariadb_server):
        customers, orders = shop_tables()
        mariadb_server.add_table("shop", orders)
        mariadb_server.add_table("shop", customers)
        client = await mariadb_server.connect(mariadb_server.config, "shop")

        schemas = await SchemaIntrospector().describe_tables(client, tables=["orders"])

        assert [s.name for s in schemas] == ["orders"]

    @pytest.mark.asyncio
    async def test_missing_table(self, mariadb_server):
        mariadb_server.add_table("shop", table("customers"))
        client = await mariadb_server.connect(mariadb_server.config, "shop")

        with pytest.raises(ExecutionError, match="Table\\(s\\) not found in shop: nope"):
            await SchemaIntrospector().describe_tables(client, tables=["nope"])

    @pytest.mark.asyncio
    async def test_switches_database(self, mariadb_server):
        mariadb_server.add_database("shop")
        mariadb_server.add_table("archive", table("old"))
        client = await mariadb_server.connect(mariadb_server.config, "shop")

        schemas = await SchemaIntrospector().describe_tables(client, database="archive")

        assert [s.name for s in schemas] == ["old"]
        assert client.database == "archive"


class TestPlanDDL:
    """Test cases for SchemaIntrospector.plan_ddl."""

    def test_foreign_keys_in_second_pass(self):
        """Test tables are created without foreign keys, which come after."""
        plan = SchemaIntrospector().plan_ddl(list(shop_tables()), MariaDBDialect())

        assert [ddl.schema.name for ddl in plan.creates] == ["customers", "orders"]
        assert all("FOREIGN KEY" not in s for ddl in plan.creates for s in ddl.statements)
        assert plan.foreign_keys == [
            "ALTER TABLE `orders` ADD CONSTRAINT `fk_orders_customer_id` FOREIGN KEY (`customer_id`) "
            "REFERENCES `customers` (`id`) ON DELETE NO ACTION ON UPDATE NO ACTION"
        ]
        assert plan.drops == []

    def test_drops_dependents_first(self):
        plan = SchemaIntrospector().plan_ddl(
            list(shop_tables()), PostgresDialect(), drop_if_exists=True
        )
        assert plan.drops == [
            'DROP TABLE IF EXISTS "orders" CASCADE',
            'DROP TABLE IF EXISTS "customers" CASCADE',
        ]

    def test_foreign_key_to_untransferred_table_omitted(self):
        _, orders = shop_tables()
        plan = SchemaIntrospector().plan_ddl([orders], MariaDBDialect())

        assert plan.foreign_keys == []
        assert plan.warnings == [
            "orders: foreign key fk_orders_customer_id references customers, "
            "which is not transferred; omitted"
        ]

    def test_referenceable_table_keeps_foreign_key(self):
        _, orders = shop_tables()
        plan = SchemaIntrospector().plan_ddl(
            [orders], MariaDBDialect(), referenceable=["customers"]
        )
        assert len(plan.foreign_keys) == 1

    def test_renames_follow_references(self):
        """Test renamed tables and the foreign keys pointing at them."""
        customers, orders = shop_tables()
        plan = SchemaIntrospector().plan_ddl(
            [customers, orders],
            MariaDBDialect(),
            names={"customers": "clients", "orders": "orders_b"},
        )

        assert [ddl.schema.name for ddl in plan.creates] == ["clients", "orders_b"]
        assert plan.foreign_keys == [
            "ALTER TABLE `orders_b` ADD CONSTRAINT `fk_orders_b_customer_id` FOREIGN KEY (`customer_id`) "
            "REFERENCES `clients` (`id`) ON DELETE NO ACTION ON UPDATE NO ACTION"
        ]
        # The input schemas are left untouched
        assert orders.foreign_keys[0].referenced_table == "customers"
        assert orders.name == "orders"
