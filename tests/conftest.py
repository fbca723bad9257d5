"""Pytest configuration and fixtures."""

import json
import os
import sqlite3
from typing import Any, Dict, Generator, List

import pytest

os.environ.setdefault("CORE_DB_AUTO_MIGRATE", "false")

from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text

from sales_monitor import admin, auth, mail_settings
from sales_monitor.auth import issue_token
from sales_monitor.db_router import dispose_engines
from sales_monitor.main import app


CORE_SCHEMA = """
CREATE TABLE myusers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL UNIQUE,
    password TEXT NOT NULL,
    full_name TEXT,
    contact_email TEXT,
    contact_number TEXT,
    active INTEGER NOT NULL DEFAULT 1,
    project_url TEXT,
    project_key TEXT,
    verified_devices TEXT,
    smtp_host TEXT,
    smtp_port INTEGER,
    smtp_user TEXT,
    smtp_pass TEXT,
    smtp_from TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE user_otps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    otp TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""

TENANT_SCHEMA = [
    """
    CREATE TABLE orders (
        id INTEGER PRIMARY KEY, order_id INTEGER, log_date TEXT, datetime TEXT,
        or_number TEXT, terminal_no TEXT, trn TEXT, table_no TEXT, guest_no INTEGER,
        mandated_no INTEGER, is_finish BOOLEAN, is_cancelled BOOLEAN, is_suspended BOOLEAN,
        cashier_name TEXT, unit_price REAL, total_amount REAL, addon_amount REAL,
        amount_discount REAL, service_charge REAL, net_total REAL, branch_code TEXT,
        branch_name TEXT, branch_address TEXT, created_at TEXT
    )
    """,
    """
    CREATE TABLE orders_discounts (
        id INTEGER PRIMARY KEY, order_id TEXT, log_date TEXT, subtotal_discount REAL
    )
    """,
    """
    CREATE TABLE order_details (
        id INTEGER PRIMARY KEY, order_detail_id TEXT, order_id INTEGER, log_date TEXT,
        datetime TEXT, terminal_no TEXT, unit_price REAL, total_amount REAL, amount REAL,
        discount_amount REAL, service_charge REAL, addon_amount REAL, amount_refund REAL,
        qty_refund REAL, category_id INTEGER, category_name TEXT, menu_name TEXT,
        menu_id INTEGER, item_qty REAL, discount_name TEXT, mandated_discount TEXT,
        voided BOOLEAN, refunded BOOLEAN, branch_code TEXT, created_at TEXT
    )
    """,
    """
    CREATE TABLE order_compositions (
        id INTEGER PRIMARY KEY, order_detail_id TEXT, compo_id TEXT, product_name TEXT,
        product_code TEXT, quantity REAL, amount REAL, is_addon BOOLEAN, voided BOOLEAN,
        terminal_code TEXT, branch_code TEXT, created_at TEXT
    )
    """,
    """
    CREATE TABLE order_tax_details (
        id INTEGER PRIMARY KEY, order_id INTEGER, branch_code TEXT, terminal_no TEXT,
        vatable_sales REAL, vat_amount REAL, vat_exempt REAL, zero_rated REAL,
        sc_vat_deduction REAL, log_date TEXT, datetime TEXT, created_at TEXT
    )
    """,
    """
    CREATE TABLE order_payments (
        id INTEGER PRIMARY KEY, order_id INTEGER, log_date TEXT, datetime TEXT,
        tender_type TEXT, charge_type TEXT, tender_amount REAL, refund_amount REAL,
        change_amount REAL, is_cancelled BOOLEAN, terminal_no TEXT, branch_code TEXT,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE itemlist (
        id INTEGER PRIMARY KEY AUTOINCREMENT, category TEXT, productcode TEXT,
        menudescription TEXT, printto TEXT, taxable TEXT, srp REAL, quantity REAL,
        item1 TEXT, status TEXT, updated_by TEXT, branchcode TEXT, created_at TEXT,
        updated_at TEXT
    )
    """,
]


def _order(id, order_id, log_date, branch_code, branch_name, terminal_no, or_number,
           total_amount, amount_discount, net_total, **extra):
    row = {
        "id": id, "order_id": order_id, "log_date": log_date, "datetime": log_date,
        "or_number": or_number, "terminal_no": terminal_no, "trn": f"TRN-{order_id}",
        "cashier_name": "Ana", "total_amount": total_amount, "amount_discount": amount_discount,
        "service_charge": 0, "net_total": net_total, "branch_code": branch_code,
        "branch_name": branch_name, "is_cancelled": False, "is_suspended": False,
    }
    row.update(extra)
    return row


def _detail(id, order_id, menu_id, menu_name, item_qty, unit_price, branch_code="MKT",
            terminal_no="T1", log_date="2024-03-01 09:15:00", **extra):
    row = {
        "id": id, "order_detail_id": f"D{id}", "order_id": order_id, "log_date": log_date,
        "terminal_no": terminal_no, "unit_price": unit_price, "item_qty": item_qty,
        "total_amount": item_qty * unit_price, "service_charge": 0, "discount_amount": 0,
        "qty_refund": 0, "menu_id": menu_id, "menu_name": menu_name,
        "category_name": "Meals" if menu_id == 1 else "Drinks", "voided": False,
        "refunded": False, "branch_code": branch_code,
    }
    row.update(extra)
    return row


SEED: Dict[str, List[Dict[str, Any]]] = {
    "orders": [
        _order(1, 101, "2024-03-01 09:15:00", "MKT", "Makati", "T1", "00001", 520, 20, 500),
        _order(2, 102, "2024-03-01 12:00:00", "MKT", "Makati", "T2", "00002", 300, 0, 300),
        _order(3, 201, "2024-03-01 18:30:00", "QC", "Quezon City", "T1", "00010", 1000, 0, 1000),
        _order(4, 103, "2024-03-01 13:00:00", "MKT", "Makati", "T1", "00004", 999, 0, 999, is_cancelled=True),
        _order(5, 104, "2024-03-02 10:00:00", "MKT", "Makati", "T1", "00003", 200, 0, 200),
    ],
    "orders_discounts": [
        {"id": 1, "order_id": "101", "log_date": "2024-03-01 09:15:00", "subtotal_discount": 50},
    ],
    "order_details": [
        _detail(1, 101, 1, "Burger Meal", 2, 200),
        _detail(2, 101, 2, "Iced Tea", 2, 60),
        _detail(3, 102, 1, "Burger Meal", 1, 200, terminal_no="T2", log_date="2024-03-01 12:00:00"),
        _detail(4, 102, 3, "Fries", 1, 100, terminal_no="T2", log_date="2024-03-01 12:00:00", voided=True),
        _detail(5, 201, 2, "Iced Tea", 10, 60, branch_code="QC", log_date="2024-03-01 18:30:00", qty_refund=1),
        _detail(6, 201, 1, "Burger Meal", 2, 200, branch_code="QC", log_date="2024-03-01 18:30:00"),
        _detail(7, 104, 1, "Burger Meal", 1, 200, log_date="2024-03-02 10:00:00"),
    ],
    "order_compositions": [
        {"id": 1, "order_detail_id": "D1", "product_name": "Burger", "product_code": "B1", "quantity": 2, "amount": 150, "is_addon": False, "voided": False},
        {"id": 2, "order_detail_id": "D1", "product_name": "Fries", "product_code": "F1", "quantity": 2, "amount": 50, "is_addon": False, "voided": False},
        {"id": 3, "order_detail_id": "D1", "product_name": "Cheese", "product_code": "C1", "quantity": 2, "amount": 15, "is_addon": True, "voided": False},
        {"id": 4, "order_detail_id": "D2", "product_name": "Iced Tea", "product_code": "IT", "quantity": 2, "amount": 60, "is_addon": False, "voided": False},
        {"id": 5, "order_detail_id": "D3", "product_name": "Burger", "product_code": "B1", "quantity": 1, "amount": 150, "is_addon": False, "voided": False},
        {"id": 6, "order_detail_id": "D3", "product_name": "Fries", "product_code": "F1", "quantity": 1, "amount": 50, "is_addon": False, "voided": False},
        {"id": 7, "order_detail_id": "D6", "product_name": "Burger", "product_code": "B1", "quantity": 2, "amount": 150, "is_addon": False, "voided": False},
        {"id": 8, "order_detail_id": "D6", "product_name": "Fries", "product_code": "F1", "quantity": 2, "amount": 50, "is_addon": False, "voided": True},
    ],
    "order_tax_details": [
        {"id": 1, "order_id": 101, "branch_code": "MKT", "terminal_no": "T1", "vatable_sales": 400, "vat_amount": 48, "vat_exempt": 0, "zero_rated": 0, "sc_vat_deduction": 0, "log_date": "2024-03-01 09:15:00"},
        {"id": 2, "order_id": 101, "branch_code": "MKT", "terminal_no": "T1", "vatable_sales": 46.43, "vat_amount": 5.57, "vat_exempt": 0, "zero_rated": 0, "sc_vat_deduction": 0, "log_date": "2024-03-01 09:15:00"},
        {"id": 3, "order_id": 201, "branch_code": "QC", "terminal_no": "T1", "vatable_sales": 892.86, "vat_amount": 107.14, "vat_exempt": 0, "zero_rated": 0, "sc_vat_deduction": 0, "log_date": "2024-03-01 18:30:00"},
    ],
    "order_payments": [
        {"id": 1, "order_id": 101, "log_date": "2024-03-01 09:15:00", "tender_type": "Cash", "tender_amount": 500, "change_amount": 50, "refund_amount": 0, "is_cancelled": False, "terminal_no": "T1", "branch_code": "MKT"},
        {"id": 2, "order_id": 101, "log_date": "2024-03-01 09:15:00", "tender_type": "Card", "tender_amount": 100, "change_amount": 0, "refund_amount": 100, "is_cancelled": True, "terminal_no": "T1", "branch_code": "MKT"},
        {"id": 3, "order_id": 102, "log_date": "2024-03-01 12:00:00", "tender_type": "GCash", "tender_amount": 300, "change_amount": 0, "refund_amount": 0, "is_cancelled": False, "terminal_no": "T2", "branch_code": "MKT"},
        {"id": 4, "order_id": 201, "log_date": "2024-03-01 18:30:00", "tender_type": "Cash", "tender_amount": 1000, "change_amount": 0, "refund_amount": 0, "is_cancelled": False, "terminal_no": "T1", "branch_code": "QC"},
    ],
    "itemlist": [
        {"category": "Meals", "productcode": "BM-01", "menudescription": "Burger Meal", "srp": 200, "status": "Active", "branchcode": "MKT", "created_at": "2024-01-01 08:00:00"},
        {"category": "Drinks", "productcode": "IT-01", "menudescription": "Iced Tea", "srp": 60, "status": "Active", "branchcode": "MKT", "created_at": "2024-01-02 08:00:00"},
    ],
}


class _CoreCursor:
    """mysql-connector style cursor over sqlite3 (``%s`` placeholders, dict rows)."""

    def __init__(self, connection: sqlite3.Connection, dictionary: bool):
        self._cursor = connection.cursor()
        self._dictionary = dictionary

    def execute(self, sql, params=()):
        self._cursor.execute(sql.replace("%s", "?"), tuple(params))

    def _wrap(self, row):
        if row is None or not self._dictionary:
            return row
        columns = [column[0] for column in self._cursor.description]
        return dict(zip(columns, row))

    def fetchone(self):
        return self._wrap(self._cursor.fetchone())

    def fetchall(self):
        return [self._wrap(row) for row in self._cursor.fetchall()]

    @property
    def rowcount(self):
        return self._cursor.rowcount

    @property
    def lastrowid(self):
        return self._cursor.lastrowid

    def close(self):
        self._cursor.close()


class CoreConnection:
    def __init__(self, path: str):
        self._connection = sqlite3.connect(path)

    def cursor(self, dictionary: bool = False):
        return _CoreCursor(self._connection, dictionary)

    def commit(self):
        self._connection.commit()

    def rollback(self):
        self._connection.rollback()

    def close(self):
        self._connection.close()


class CoreDatabase:
    def __init__(self, path: str):
        self.path = path

    def connect(self) -> CoreConnection:
        return CoreConnection(self.path)

    def execute(self, sql: str, params=()) -> None:
        with sqlite3.connect(self.path) as connection:
            connection.execute(sql, params)

    def query(self, sql: str, params=()) -> List[Dict[str, Any]]:
        connection = sqlite3.connect(self.path)
        connection.row_factory = sqlite3.Row
        try:
            return [dict(row) for row in connection.execute(sql, params).fetchall()]
        finally:
            connection.close()

    def add_user(self, **fields) -> Dict[str, Any]:
        row = {
            "username": "manager",
            "password": "secret123",
            "full_name": "Store Manager",
            "contact_email": "manager@chain.ph",
            "active": 1,
            "project_url": "sqlite:///tenant.db",
            "project_key": "anon-key",
            "verified_devices": json.dumps([]),
        }
        row.update(fields)
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        connection = sqlite3.connect(self.path)
        try:
            cursor = connection.execute(
                f"INSERT INTO myusers ({columns}) VALUES ({placeholders})", tuple(row.values())
            )
            connection.commit()
            row["id"] = cursor.lastrowid
        finally:
            connection.close()
        return row


@pytest.fixture
def core_db(tmp_path, monkeypatch) -> CoreDatabase:
    """A throwaway core database wired into every module that opens core connections."""
    path = str(tmp_path / "core.db")
    connection = sqlite3.connect(path)
    connection.executescript(CORE_SCHEMA)
    connection.close()

    database = CoreDatabase(path)
    for module in (auth, admin, mail_settings):
        monkeypatch.setattr(module, "get_core_connection", database.connect)
    return database


@pytest.fixture
def tenant_url(tmp_path) -> Generator[str, None, None]:
    """A seeded tenant POS database."""
    url = f"sqlite:///{tmp_path / 'tenant.db'}"
    engine = create_engine(url)
    with engine.begin() as conn:
        for ddl in TENANT_SCHEMA:
            conn.execute(text(ddl))
        for table, rows in SEED.items():
            for row in rows:
                columns = ", ".join(row)
                binds = ", ".join(f":{column}" for column in row)
                conn.execute(text(f"INSERT INTO {table} ({columns}) VALUES ({binds})"), row)
    engine.dispose()
    yield url
    dispose_engines()


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


@pytest.fixture
def auth_headers(tenant_url) -> Dict[str, str]:
    token = issue_token(
        {
            "id": 1,
            "username": "manager",
            "full_name": "Store Manager",
            "project_url": tenant_url,
            "project_key": "anon-key",
        }
    )
    return {"Authorization": f"Bearer {token}"}
