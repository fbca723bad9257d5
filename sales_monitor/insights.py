"""
Report endpoints for the dashboard pages. Each request resolves the caller's
tenant database from the session token, selects the raw POS rows for the
requested period and hands them to ``sales_monitor.reports`` for grouping.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from sales_monitor.auth import get_auth_user
from sales_monitor.db_router import engine_for_user, execute_with_timing
from sales_monitor import reports
from sqlalchemy import bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from typing import Optional, Dict, Any, List, Sequence, Tuple
from datetime import date, datetime, timedelta
import logging

router = APIRouter()

_logger = logging.getLogger(__name__)

# Upper bound on values in a single IN (...) list
_IN_CHUNK_SIZE = 500

_LIVE_ORDER = (
    "(is_cancelled IS NULL OR is_cancelled = :no) "
    "AND (is_suspended IS NULL OR is_suspended = :no)"
)
_LIVE_DETAIL = "(voided IS NULL OR voided = :no) AND (refunded IS NULL OR refunded = :no)"


def _parse_day(value: Optional[str], name: str) -> date:
    if not value:
        return date.today()
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name} date, expected YYYY-MM-DD")


def _date_range(start: Optional[str], end: Optional[str]) -> Dict[str, Any]:
    """Bind parameters covering ``start 00:00`` up to the end of ``end``."""
    start_day = _parse_day(start, "start")
    end_day = _parse_day(end, "end")
    if end_day < start_day:
        raise HTTPException(status_code=400, detail="End date must not be before start date")
    return {
        "start": start_day.isoformat(),
        "end_next": (end_day + timedelta(days=1)).isoformat(),
        "no": False,
    }


def _range_payload(params: Dict[str, Any]) -> Dict[str, str]:
    end_day = date.fromisoformat(params["end_next"]) - timedelta(days=1)
    return {"start": params["start"], "end": end_day.isoformat()}


def _where(
    params: Dict[str, Any],
    branch: Optional[str] = None,
    terminal: Optional[str] = None,
    *extra: str,
) -> str:
    parts = ["log_date >= :start", "log_date < :end_next"]
    parts.extend(extra)
    if branch and branch != "all":
        parts.append("branch_code = :branch")
        params["branch"] = branch
    if terminal and terminal != "all":
        parts.append("terminal_no = :terminal")
        params["terminal"] = terminal
    return " AND ".join(parts)


def _rows(conn, sql, params: Dict[str, Any], name: str) -> List[Dict[str, Any]]:
    result = execute_with_timing(conn, sql, params, query_name=name)
    return [dict(row) for row in result.mappings()]


def _rows_in(
    conn, sql: str, column_values: Sequence[Any], name: str, params: Optional[Dict[str, Any]] = None
) -> List[Dict[str, Any]]:
    """Run ``sql`` (which must reference ``:ids``) once per chunk of ``column_values``."""
    values = list(dict.fromkeys(v for v in column_values if v is not None))
    if not values:
        return []
    statement = text(sql).bindparams(bindparam("ids", expanding=True))
    rows: List[Dict[str, Any]] = []
    for offset in range(0, len(values), _IN_CHUNK_SIZE):
        chunk_params = dict(params or {})
        chunk_params["ids"] = values[offset:offset + _IN_CHUNK_SIZE]
        rows.extend(_rows(conn, statement, chunk_params, name))
    return rows


def _summary_display(summary: Dict[str, Any]) -> Dict[str, str]:
    return {
        "total_sales": reports.format_currency(summary["total_sales"]),
        "average_order_value": reports.format_currency(summary["average_order_value"]),
    }


def _report_failed(report: str, exc: Exception) -> HTTPException:
    _logger.error("Failed to load %s: %s", report, exc)
    return HTTPException(status_code=500, detail=f"Failed to load {report}")


@router.get("/branches")
def get_branches(user: dict = Depends(get_auth_user)):
    engine = engine_for_user(user)
    try:
        with engine.connect() as conn:
            rows = _rows(
                conn,
                """
                SELECT branch_code, branch_name FROM orders
                WHERE branch_code IS NOT NULL AND branch_name IS NOT NULL
                """,
                {},
                "branches",
            )
    except SQLAlchemyError as e:
        raise _report_failed("branches", e)
    return {"branches": reports.unique_branches(rows)}


@router.get("/terminals")
def get_terminals(
    branch: Optional[str] = Query(default=None, description="Branch code, or 'all'"),
    user: dict = Depends(get_auth_user),
):
    engine = engine_for_user(user)
    try:
        with engine.connect() as conn:
            rows = _rows(
                conn,
                """
                SELECT terminal_no, branch_code FROM orders
                WHERE terminal_no IS NOT NULL AND branch_code IS NOT NULL
                """,
                {},
                "terminals",
            )
    except SQLAlchemyError as e:
        raise _report_failed("terminals", e)
    selected = branch if branch and branch != "all" else None
    return {"terminals": reports.unique_terminals(rows, selected)}


@router.get("/dashboard")
def get_dashboard(
    start: Optional[str] = Query(default=None, description="Start date (YYYY-MM-DD)"),
    end: Optional[str] = Query(default=None, description="End date (YYYY-MM-DD)"),
    branch: Optional[str] = Query(default="all", description="Branch code, or 'all'"),
    top_sort: str = Query(default="quantity", pattern="^(quantity|sales)$"),
    user: dict = Depends(get_auth_user),
):
    params = _date_range(start, end)
    engine = engine_for_user(user)

    try:
        with engine.connect() as conn:
            order_params = dict(params)
            orders = _rows(
                conn,
                f"""
                SELECT order_id, net_total, branch_code, branch_name, terminal_no
                FROM orders
                WHERE {_where(order_params, branch, None, _LIVE_ORDER)}
                """,
                order_params,
                "dashboard_orders",
            )

            if not orders:
                empty = reports.summarize_orders([], {})
                return {
                    "range": _range_payload(params),
                    "summary": empty,
                    "display": _summary_display(empty),
                    "sales_by_branch": [],
                    "payment_methods": [],
                    "top_products": [],
                }

            discounts = reports.discounts_by_order(
                _rows(
                    conn,
                    """
                    SELECT order_id, subtotal_discount FROM orders_discounts
                    WHERE log_date >= :start AND log_date < :end_next
                    """,
                    params,
                    "dashboard_discounts",
                )
            )

            payment_params = dict(params)
            payments = _rows(
                conn,
                f"""
                SELECT tender_type, tender_amount, change_amount, refund_amount,
                       terminal_no, branch_code
                FROM order_payments
                WHERE {_where(payment_params, branch)}
                """,
                payment_params,
                "dashboard_payments",
            )

            detail_params = dict(params)
            details = _rows(
                conn,
                f"""
                SELECT menu_name, menu_id, item_qty, qty_refund, total_amount, branch_code
                FROM order_details
                WHERE {_where(detail_params, branch, None, "(voided IS NULL OR voided = :no)")}
                """,
                detail_params,
                "dashboard_top_products",
            )
    except SQLAlchemyError as e:
        raise _report_failed("sales data", e)

    summary = reports.summarize_orders(orders, discounts)
    return {
        "range": _range_payload(params),
        "summary": summary,
        "display": _summary_display(summary),
        "sales_by_branch": reports.sales_by_branch(orders, discounts),
        "payment_methods": reports.payment_methods(payments),
        "top_products": reports.top_products(details, sort_by=top_sort),
    }


_ORDER_COLUMNS = """
    id, order_id, log_date, datetime, or_number, terminal_no, trn, table_no,
    guest_no, mandated_no, is_finish, cashier_name, unit_price, total_amount,
    addon_amount, amount_discount, service_charge, net_total, branch_code,
    branch_name, branch_address, created_at
"""


def _related_rows(conn, orders: List[Dict[str, Any]]) -> Tuple[list, list, list, list]:
    order_ids = [o.get("order_id") for o in orders]

    taxes = _rows_in(
        conn, "SELECT * FROM order_tax_details WHERE order_id IN :ids", order_ids, "order_tax_details"
    )
    payments = _rows_in(
        conn, "SELECT * FROM order_payments WHERE order_id IN :ids", order_ids, "order_payments"
    )
    details = _rows_in(
        conn,
        """
        SELECT id, order_detail_id, order_id, log_date, datetime, terminal_no,
               unit_price, total_amount, discount_amount, service_charge,
               addon_amount, amount_refund, qty_refund, category_id,
               category_name, menu_name, menu_id, item_qty, discount_name,
               mandated_discount, voided, refunded, branch_code, created_at
        FROM order_details WHERE order_id IN :ids
        """,
        order_ids,
        "order_details",
    )
    compositions = _rows_in(
        conn,
        """
        SELECT id, order_detail_id, compo_id, product_name, product_code,
               quantity, amount, is_addon, voided, terminal_code, branch_code,
               created_at
        FROM order_compositions WHERE order_detail_id IN :ids
        """,
        [d.get("order_detail_id") for d in details],
        "order_compositions",
    )
    return details, compositions, taxes, payments


@router.get("/transactions")
def get_transactions(
    start: Optional[str] = Query(default=None, description="Start date (YYYY-MM-DD)"),
    end: Optional[str] = Query(default=None, description="End date (YYYY-MM-DD)"),
    branch: Optional[str] = Query(default="all"),
    terminal: Optional[str] = Query(default="all"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=100),
    user: dict = Depends(get_auth_user),
):
    params = _date_range(start, end)
    engine = engine_for_user(user)
    where = _where(params, branch, terminal, _LIVE_ORDER)

    try:
        with engine.connect() as conn:
            totals = _rows(
                conn, f"SELECT net_total FROM orders WHERE {where}", params, "transactions_summary"
            )
            summary = reports.transaction_summary(totals)
            pagination = reports.paginate(len(totals), page, page_size)

            page_params = dict(params, limit=page_size, offset=(page - 1) * page_size)
            orders = _rows(
                conn,
                f"""
                SELECT {_ORDER_COLUMNS} FROM orders
                WHERE {where}
                ORDER BY log_date DESC, id DESC
                LIMIT :limit OFFSET :offset
                """,
                page_params,
                "transactions_page",
            )
            if not orders:
                return {"transactions": [], "pagination": pagination, "summary": summary}

            details, compositions, taxes, payments = _related_rows(conn, orders)
    except SQLAlchemyError as e:
        raise _report_failed("transaction data", e)

    return {
        "transactions": reports.build_transactions(orders, details, compositions, taxes, payments),
        "pagination": pagination,
        "summary": summary,
    }


@router.get("/pmix")
def get_pmix(
    start: Optional[str] = Query(default=None, description="Start date (YYYY-MM-DD)"),
    end: Optional[str] = Query(default=None, description="End date (YYYY-MM-DD)"),
    branch: Optional[str] = Query(default="all"),
    terminal: Optional[str] = Query(default="all"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=100),
    user: dict = Depends(get_auth_user),
):
    params = _date_range(start, end)
    engine = engine_for_user(user)
    where = _where(params, branch, terminal, _LIVE_DETAIL)

    try:
        with engine.connect() as conn:
            menus = reports.unique_menus(
                _rows(conn, f"SELECT menu_id, menu_name FROM order_details WHERE {where}", params, "pmix_menus")
            )
            pagination = reports.paginate(len(menus), page, page_size)
            page_menus = menus[(page - 1) * page_size: page * page_size]
            if not page_menus:
                return {"items": [], "pagination": pagination}

            details = _rows_in(
                conn,
                f"""
                SELECT order_detail_id, menu_id, menu_name, category_name, item_qty,
                       total_amount, unit_price, service_charge, discount_amount
                FROM order_details
                WHERE {where} AND menu_id IN :ids
                """,
                [m["menu_id"] for m in page_menus],
                "pmix_details",
                params,
            )
            compositions = _rows_in(
                conn,
                """
                SELECT order_detail_id, product_name, product_code, quantity, is_addon, amount
                FROM order_compositions WHERE order_detail_id IN :ids
                """,
                [d.get("order_detail_id") for d in details],
                "pmix_compositions",
            )
    except SQLAlchemyError as e:
        raise _report_failed("PMIX data", e)

    return {"items": reports.pmix(details, compositions), "pagination": pagination}


@router.get("/menu-performance")
def get_menu_performance(
    start: Optional[str] = Query(default=None, description="Start date (YYYY-MM-DD)"),
    end: Optional[str] = Query(default=None, description="End date (YYYY-MM-DD)"),
    branch: Optional[str] = Query(default="all"),
    user: dict = Depends(get_auth_user),
):
    params = _date_range(start, end)
    engine = engine_for_user(user)

    try:
        with engine.connect() as conn:
            details = _rows(
                conn,
                f"""
                SELECT menu_name, menu_id, category_name, unit_price, item_qty,
                       total_amount, service_charge, order_id, order_detail_id
                FROM order_details
                WHERE {_where(params, branch, None, _LIVE_DETAIL)}
                """,
                params,
                "menu_performance_details",
            )
            compositions = _rows_in(
                conn,
                "SELECT * FROM order_compositions WHERE order_detail_id IN :ids",
                [d.get("order_detail_id") for d in details],
                "menu_performance_compositions",
            )
    except SQLAlchemyError as e:
        raise _report_failed("menu performance data", e)

    return {"items": reports.menu_performance(details, compositions)}


@router.get("/bir-esales")
def get_bir_esales(
    start: Optional[str] = Query(default=None, description="Start date (YYYY-MM-DD)"),
    end: Optional[str] = Query(default=None, description="End date (YYYY-MM-DD)"),
    branch: Optional[str] = Query(default="all"),
    terminal: Optional[str] = Query(default="all"),
    user: dict = Depends(get_auth_user),
):
    params = _date_range(start, end)
    engine = engine_for_user(user)

    try:
        with engine.connect() as conn:
            orders = _rows(
                conn,
                f"""
                SELECT order_id, log_date, datetime, or_number, terminal_no,
                       branch_code, branch_name, total_amount, amount_discount,
                       service_charge, net_total
                FROM orders
                WHERE {_where(params, branch, terminal, _LIVE_ORDER)}
                """,
                params,
                "bir_orders",
            )
            taxes = _rows_in(
                conn,
                "SELECT * FROM order_tax_details WHERE order_id IN :ids",
                [o.get("order_id") for o in orders],
                "bir_tax_details",
            )
    except SQLAlchemyError as e:
        raise _report_failed("BIR e-sales data", e)

    report = reports.bir_esales(orders, taxes)
    report["range"] = _range_payload(params)
    return report
