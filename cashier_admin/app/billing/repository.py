"""Persistence layer for billable accounts and their subscriptions."""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

import psycopg2.extras
from psycopg2 import sql
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .models import AddonSubscription, BillableAccount, BillableKind, LocalSubscription

try:  # pragma: no cover - resolve connection helper when imported from FastAPI app
    from cashier_admin.app_context import get_conn
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "cashier_admin":
        raise
    from ...app_context import get_conn  # type: ignore[no-redef]


@dataclass(frozen=True)
class BillableTables:
    """Table layout used for one kind of billable entity."""

    accounts: str
    subscriptions: str
    addon_subscriptions: str
    owner_column: str


TABLES_BY_KIND: Dict[BillableKind, BillableTables] = {
    BillableKind.USER: BillableTables(
        accounts="users",
        subscriptions="subscriptions",
        addon_subscriptions="addon_subscriptions",
        owner_column="user_id",
    ),
    BillableKind.TEAM: BillableTables(
        accounts="teams",
        subscriptions="team_subscriptions",
        addon_subscriptions="team_addon_subscriptions",
        owner_column="team_id",
    ),
}


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_account(row: dict, kind: BillableKind) -> BillableAccount:
    return BillableAccount(
        id=str(row["id"]),
        kind=kind,
        name=row.get("name"),
        email=row.get("email"),
        provider_customer_id=row.get("stripe_id"),
        default_payment_method_id=row.get("default_payment_method"),
    )


def _row_to_subscription(row: dict, owner_column: str) -> LocalSubscription:
    return LocalSubscription(
        id=str(row["id"]),
        account_id=str(row[owner_column]),
        name=row["name"],
        provider_id=row["stripe_id"],
        provider_item_id=row["stripe_item_id"],
        provider_plan=row["stripe_plan"],
        quantity=int(row.get("quantity") or 1),
        trial_ends_at=row.get("trial_ends_at"),
        ends_at=row.get("ends_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_addon(row: dict, owner_column: str) -> AddonSubscription:
    return AddonSubscription(
        id=str(row["id"]),
        account_id=str(row[owner_column]),
        name=row.get("name"),
        provider_id=row["stripe_id"],
        provider_item_id=row.get("stripe_item_id"),
        provider_plan=row["provider_plan"],
        quantity=int(row.get("quantity") or 1),
        trial_ends_at=row.get("trial_ends_at"),
        ends_at=row.get("ends_at"),
        created_at=row["created_at"],
    )


class PostgresSubscriptionRepository:
    """Reads billable accounts and reads/writes subscription rows in PostgreSQL."""

    def __init__(
        self,
        *,
        kind: BillableKind = BillableKind.USER,
        conn: Optional[PgConnection] = None,
    ) -> None:
        self._kind = kind
        self._tables = TABLES_BY_KIND[kind]
        self._conn = conn

    @property
    def kind(self) -> BillableKind:
        return self._kind

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def find_account(self, account_id: str) -> Optional[BillableAccount]:
        with self._cursor() as cursor:
            cursor.execute(
                sql.SQL(
                    """
                    SELECT id, name, email, stripe_id, default_payment_method
                    FROM {accounts}
                    WHERE id = %s
                    LIMIT 1
                    """
                ).format(accounts=sql.Identifier(self._tables.accounts)),
                (account_id,),
            )
            row = cursor.fetchone()
            return _row_to_account(row, self._kind) if row else None

    def find_by_account(self, account_id: str, name: str) -> Optional[LocalSubscription]:
        with self._cursor() as cursor:
            cursor.execute(
                sql.SQL(
                    """
                    SELECT *
                    FROM {subscriptions}
                    WHERE {owner} = %s AND name = %s
                    ORDER BY created_at DESC
                    LIMIT 1
                    """
                ).format(
                    subscriptions=sql.Identifier(self._tables.subscriptions),
                    owner=sql.Identifier(self._tables.owner_column),
                ),
                (account_id, name),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row, self._tables.owner_column) if row else None

    def find_addon_by_account_and_id(self, account_id: str, addon_id: str) -> Optional[AddonSubscription]:
        with self._cursor() as cursor:
            cursor.execute(
                sql.SQL(
                    """
                    SELECT *
                    FROM {addons}
                    WHERE id = %s AND {owner} = %s
                    LIMIT 1
                    """
                ).format(
                    addons=sql.Identifier(self._tables.addon_subscriptions),
                    owner=sql.Identifier(self._tables.owner_column),
                ),
                (addon_id, account_id),
            )
            row = cursor.fetchone()
            return _row_to_addon(row, self._tables.owner_column) if row else None

    def list_addons_to_settle(self, account_id: str) -> list[AddonSubscription]:
        with self._cursor() as cursor:
            cursor.execute(
                sql.SQL(
                    """
                    SELECT *
                    FROM {addons}
                    WHERE {owner} = %s
                      AND (ends_at IS NULL OR ends_at > NOW())
                    ORDER BY created_at ASC
                    """
                ).format(
                    addons=sql.Identifier(self._tables.addon_subscriptions),
                    owner=sql.Identifier(self._tables.owner_column),
                ),
                (account_id,),
            )
            rows = cursor.fetchall() or []
            return [_row_to_addon(row, self._tables.owner_column) for row in rows]

    def persist(self, subscription: LocalSubscription) -> LocalSubscription:
        with self._cursor() as cursor:
            cursor.execute(
                sql.SQL(
                    """
                    UPDATE {subscriptions}
                    SET stripe_plan = %(provider_plan)s,
                        stripe_item_id = %(provider_item_id)s,
                        quantity = %(quantity)s,
                        trial_ends_at = %(trial_ends_at)s,
                        ends_at = %(ends_at)s,
                        updated_at = NOW()
                    WHERE id = %(id)s
                    RETURNING *
                    """
                ).format(subscriptions=sql.Identifier(self._tables.subscriptions)),
                {
                    "id": subscription.id,
                    "provider_plan": subscription.provider_plan,
                    "provider_item_id": subscription.provider_item_id,
                    "quantity": subscription.quantity,
                    "trial_ends_at": subscription.trial_ends_at,
                    "ends_at": subscription.ends_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist subscription")
            return _row_to_subscription(row, self._tables.owner_column)

    def persist_addon(self, addon: AddonSubscription) -> AddonSubscription:
        with self._cursor() as cursor:
            cursor.execute(
                sql.SQL(
                    """
                    UPDATE {addons}
                    SET provider_plan = %(provider_plan)s,
                        quantity = %(quantity)s,
                        trial_ends_at = %(trial_ends_at)s,
                        ends_at = %(ends_at)s,
                        updated_at = NOW()
                    WHERE id = %(id)s
                    RETURNING *
                    """
                ).format(addons=sql.Identifier(self._tables.addon_subscriptions)),
                {
                    "id": addon.id,
                    "provider_plan": addon.provider_plan,
                    "quantity": addon.quantity,
                    "trial_ends_at": addon.trial_ends_at,
                    "ends_at": addon.ends_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist add-on subscription")
            return _row_to_addon(row, self._tables.owner_column)


__all__ = ["BillableTables", "PostgresSubscriptionRepository", "TABLES_BY_KIND", "managed_connection"]
