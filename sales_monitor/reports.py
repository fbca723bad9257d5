"""Aggregations behind the dashboard reports.

Every function takes plain row mappings as returned by the tenant database
and returns JSON-ready dicts. Nothing here touches a connection, so the
insights routes stay a thin fetch-then-aggregate layer.
"""

from collections import OrderedDict
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
import math

UNKNOWN_TERMINAL = "Unknown Terminal"
TAX_FIELDS = ("vatable_sales", "vat_amount", "vat_exempt", "zero_rated", "sc_vat_deduction")

Row = Mapping[str, Any]


def _num(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    try:
        return float(str(value).strip() or 0)
    except ValueError:
        return 0.0


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "t", "yes", "y"}
    return bool(value)


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def coerce_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None) if value.tzinfo else value
    if isinstance(value, date):
        return datetime.combine(value, datetime.min.time())
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d", "%m/%d/%Y", "%m/%d/%Y %H:%M:%S"):
            try:
                return datetime.strptime(text, fmt)
            except ValueError:
                continue
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed.replace(tzinfo=None) if parsed.tzinfo else parsed
    return None


def format_currency(amount: Any) -> str:
    value = _num(amount)
    sign = "-" if value < 0 else ""
    return f"{sign}₱{abs(value):,.2f}"


def paginate(total: int, page: int, page_size: int) -> Dict[str, int]:
    return {
        "current_page": page,
        "total_pages": math.ceil(total / page_size) if page_size else 0,
        "total_count": total,
        "items_per_page": page_size,
    }


# --- branch / terminal pickers ---

def unique_branches(rows: Iterable[Row]) -> List[Dict[str, str]]:
    branches: Dict[str, Dict[str, str]] = {}
    for row in rows:
        code = row.get("branch_code")
        if code is None:
            continue
        branches[code] = {
            "branch_code": code,
            "branch_name": row.get("branch_name") or code,
        }
    return sorted(branches.values(), key=lambda b: _text(b["branch_name"]).lower())


def unique_terminals(rows: Iterable[Row], branch: Optional[str] = None) -> List[Dict[str, str]]:
    terminals: Dict[Tuple[str, str], Dict[str, str]] = {}
    for row in rows:
        code = row.get("branch_code")
        terminal = row.get("terminal_no")
        if code is None or terminal is None:
            continue
        if branch and code != branch:
            continue
        terminals[(code, terminal)] = {"terminal_no": terminal, "branch_code": code}
    return sorted(terminals.values(), key=lambda t: _text(t["terminal_no"]))


# --- dashboard ---

def discounts_by_order(rows: Iterable[Row]) -> Dict[str, float]:
    # orders_discounts.order_id is a varchar, so keys are normalised to str
    totals: Dict[str, float] = {}
    for row in rows:
        key = _text(row.get("order_id"))
        totals[key] = totals.get(key, 0.0) + _num(row.get("subtotal_discount"))
    return totals


def _net_after_discount(order: Row, discounts: Mapping[str, float]) -> float:
    return _num(order.get("net_total")) - discounts.get(_text(order.get("order_id")), 0.0)


def summarize_orders(orders: List[Row], discounts: Mapping[str, float]) -> Dict[str, Any]:
    total = sum(_net_after_discount(order, discounts) for order in orders)
    count = len(orders)
    return {
        "total_sales": total,
        "order_count": count,
        "average_order_value": total / count if count else 0.0,
    }


def _terminal_list(amounts: Mapping[str, float]) -> List[Dict[str, Any]]:
    return [
        {"terminal_no": terminal, "amount": amount}
        for terminal, amount in sorted(amounts.items(), key=lambda item: item[0])
    ]


def sales_by_branch(orders: Iterable[Row], discounts: Mapping[str, float]) -> List[Dict[str, Any]]:
    branches: "OrderedDict[Any, Dict[str, Any]]" = OrderedDict()
    for order in orders:
        branch_name = order.get("branch_name")
        terminal = order.get("terminal_no") or UNKNOWN_TERMINAL
        amount = _net_after_discount(order, discounts)

        branch = branches.setdefault(
            branch_name, {"branch_name": branch_name, "total_sales": 0.0, "terminals": {}}
        )
        branch["total_sales"] += amount
        branch["terminals"][terminal] = branch["terminals"].get(terminal, 0.0) + amount

    return [
        {
            "branch_name": branch["branch_name"],
            "total_sales": branch["total_sales"],
            "terminals": _terminal_list(branch["terminals"]),
        }
        for branch in branches.values()
    ]


def payment_methods(payments: Iterable[Row]) -> List[Dict[str, Any]]:
    methods: "OrderedDict[Any, Dict[str, Any]]" = OrderedDict()
    for payment in payments:
        net = (
            _num(payment.get("tender_amount"))
            - _num(payment.get("change_amount"))
            - _num(payment.get("refund_amount"))
        )
        terminal = payment.get("terminal_no") or UNKNOWN_TERMINAL
        tender_type = payment.get("tender_type")

        method = methods.setdefault(
            tender_type, {"tender_type": tender_type, "total_amount": 0.0, "terminals": {}}
        )
        method["total_amount"] += net
        method["terminals"][terminal] = method["terminals"].get(terminal, 0.0) + net

    result = [
        {
            "tender_type": method["tender_type"],
            "total_amount": method["total_amount"],
            "terminals": _terminal_list(method["terminals"]),
        }
        for method in methods.values()
    ]
    return sorted(result, key=lambda m: m["total_amount"], reverse=True)


def top_products(details: Iterable[Row], sort_by: str = "quantity", limit: int = 10) -> List[Dict[str, Any]]:
    products: "OrderedDict[Any, Dict[str, Any]]" = OrderedDict()
    for detail in details:
        name = detail.get("menu_name")
        product = products.setdefault(
            name, {"menu_name": name, "total_quantity": 0.0, "total_amount": 0.0}
        )
        product["total_quantity"] += _num(detail.get("item_qty")) - _num(detail.get("qty_refund"))
        product["total_amount"] += _num(detail.get("total_amount"))

    key = "total_amount" if sort_by == "sales" else "total_quantity"
    return sorted(products.values(), key=lambda p: p[key], reverse=True)[:limit]


# --- sales report ---

def transaction_summary(orders: List[Row]) -> Dict[str, Any]:
    total = sum(_num(order.get("net_total")) for order in orders)
    count = len(orders)
    return {
        "total_sales": total,
        "total_transactions": count,
        "average_ticket": total / count if count else 0.0,
    }


def _order_key(row: Row) -> Tuple[str, str, str]:
    return (_text(row.get("order_id")), _text(row.get("branch_code")), _text(row.get("terminal_no")))


def _group_by_order(rows: Iterable[Row]) -> Dict[Tuple[str, str, str], List[Row]]:
    grouped: Dict[Tuple[str, str, str], List[Row]] = {}
    for row in rows:
        grouped.setdefault(_order_key(row), []).append(row)
    return grouped


def _is_live(detail: Row) -> bool:
    return not _flag(detail.get("voided")) and not _flag(detail.get("refunded"))


def _displayed_compositions(detail: Row, compositions: List[Row]) -> List[Dict[str, Any]]:
    # a lone composition that is the menu item itself adds nothing to the receipt
    if len(compositions) > 1:
        return [dict(c) for c in compositions]
    menu_name = detail.get("menu_name")
    return [dict(c) for c in compositions if c.get("product_name") != menu_name]


def aggregate_tax(rows: List[Row]) -> Optional[Dict[str, Any]]:
    if not rows:
        return None
    tax = dict(rows[0])
    for field in TAX_FIELDS:
        tax[field] = sum(_num(row.get(field)) for row in rows)
    return tax


def build_transactions(
    orders: Iterable[Row],
    details: Iterable[Row],
    compositions: Iterable[Row],
    taxes: Iterable[Row],
    payments: Iterable[Row],
) -> List[Dict[str, Any]]:
    details_by_order = _group_by_order(details)
    taxes_by_order = _group_by_order(taxes)
    payments_by_order = _group_by_order(payments)

    compositions_by_detail: Dict[str, List[Row]] = {}
    for composition in compositions:
        compositions_by_detail.setdefault(_text(composition.get("order_detail_id")), []).append(composition)

    transactions = []
    for order in orders:
        key = _order_key(order)
        order_details = details_by_order.get(key, [])
        live = [d for d in order_details if _is_live(d)]
        order_payments = [dict(p) for p in payments_by_order.get(key, [])]
        active_payments = [p for p in order_payments if not _flag(p.get("is_cancelled"))]

        lines = []
        for detail in live:
            line = dict(detail)
            line["compositions"] = _displayed_compositions(
                detail, compositions_by_detail.get(_text(detail.get("order_detail_id")), [])
            )
            lines.append(line)

        transaction = dict(order)
        transaction["details"] = lines
        transaction["tax_detail"] = aggregate_tax(taxes_by_order.get(key, []))
        transaction["payments"] = order_payments
        transaction["totals"] = {
            "subtotal": sum(_num(d.get("item_qty")) * _num(d.get("unit_price")) for d in live),
            "voided_total": sum(
                _num(d.get("total_amount")) for d in order_details if not _is_live(d)
            ),
            "service_charge": sum(_num(d.get("service_charge")) for d in live),
            "discount": _num(order.get("amount_discount")),
            "grand_total": sum(
                _num(d.get("total_amount")) + _num(d.get("service_charge")) for d in live
            ),
            "tendered": sum(_num(p.get("tender_amount")) for p in active_payments),
            "change": sum(_num(p.get("change_amount")) for p in active_payments),
        }
        transactions.append(transaction)
    return transactions


# --- product mix ---

def unique_menus(rows: Iterable[Row]) -> List[Dict[str, Any]]:
    menus: Dict[Any, Dict[str, Any]] = {}
    for row in rows:
        menus[row.get("menu_id")] = {"menu_id": row.get("menu_id"), "menu_name": row.get("menu_name")}
    return sorted(menus.values(), key=lambda m: _text(m["menu_name"]).lower())


def _sorted_compositions(compositions: Mapping[Any, Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(compositions.values(), key=lambda c: _text(c["product_name"]).lower())


def pmix(details: Iterable[Row], compositions: Iterable[Row]) -> List[Dict[str, Any]]:
    menus: Dict[Any, Dict[str, Any]] = {}
    menu_for_detail: Dict[str, Any] = {}
    for detail in details:
        menu_id = detail.get("menu_id")
        menu = menus.get(menu_id)
        if menu is None:
            menu = menus[menu_id] = {
                "menu_id": menu_id,
                "menu_name": detail.get("menu_name"),
                "category_name": detail.get("category_name"),
                "total_quantity": 0.0,
                "total_amount": 0.0,
                "unit_price": _num(detail.get("unit_price")),
                "service_charge": 0.0,
                "discount_amount": 0.0,
                "compositions": {},
            }
        menu["total_quantity"] += _num(detail.get("item_qty"))
        menu["total_amount"] += _num(detail.get("total_amount"))
        menu["service_charge"] += _num(detail.get("service_charge"))
        menu["discount_amount"] += _num(detail.get("discount_amount"))
        menu_for_detail[_text(detail.get("order_detail_id"))] = menu_id

    for composition in compositions:
        menu_id = menu_for_detail.get(_text(composition.get("order_detail_id")))
        if menu_id not in menus:
            continue
        menu = menus[menu_id]
        if _text(composition.get("product_name")).lower() == _text(menu["menu_name"]).lower():
            continue
        is_addon = _flag(composition.get("is_addon"))
        key = (composition.get("product_code"), is_addon)
        entry = menu["compositions"].get(key)
        if entry is None:
            # amount is the unit amount of the first sale seen, not a running sum
            entry = menu["compositions"][key] = {
                "product_name": composition.get("product_name"),
                "product_code": composition.get("product_code"),
                "total_quantity": 0.0,
                "is_addon": is_addon,
                "amount": _num(composition.get("amount")),
            }
        entry["total_quantity"] += _num(composition.get("quantity"))

    items = sorted(menus.values(), key=lambda m: _text(m["menu_name"]).lower())
    for item in items:
        item["compositions"] = _sorted_compositions(item["compositions"])
    return items


# --- menu performance ---

def menu_performance(details: Iterable[Row], compositions: Iterable[Row]) -> List[Dict[str, Any]]:
    menus: Dict[Any, Dict[str, Any]] = {}
    order_ids: Dict[Any, set] = {}
    menu_for_detail: Dict[str, Any] = {}

    for detail in details:
        name = detail.get("menu_name")
        quantity = _num(detail.get("item_qty"))
        amount = _num(detail.get("total_amount"))
        service = _num(detail.get("service_charge"))

        menu = menus.get(name)
        if menu is None:
            menu = menus[name] = {
                "menu_name": name,
                "menu_id": detail.get("menu_id"),
                "category_name": detail.get("category_name"),
                "unit_price": _num(detail.get("unit_price")),
                "total_quantity": 0.0,
                "total_amount": 0.0,
                "total_service_charge": 0.0,
                "total_sales_with_service": 0.0,
                "total_orders": 0,
                "average_order_value": 0.0,
                "compositions": {},
            }
            order_ids[name] = set()

        menu["total_quantity"] += quantity
        menu["total_amount"] += amount
        menu["total_service_charge"] += service
        menu["total_sales_with_service"] += amount + service
        order_ids[name].add(_text(detail.get("order_id")))
        menu["total_orders"] = len(order_ids[name])
        menu["average_order_value"] = menu["total_sales_with_service"] / menu["total_orders"]
        menu_for_detail[_text(detail.get("order_detail_id"))] = name

    for composition in compositions:
        if _flag(composition.get("voided")):
            continue
        name = menu_for_detail.get(_text(composition.get("order_detail_id")))
        if name not in menus:
            continue
        is_addon = _flag(composition.get("is_addon"))
        key = (composition.get("product_code"), is_addon)
        entry = menus[name]["compositions"].setdefault(
            key,
            {
                "product_name": composition.get("product_name"),
                "product_code": composition.get("product_code"),
                "total_quantity": 0.0,
                "total_amount": 0.0,
                "is_addon": is_addon,
            },
        )
        entry["total_quantity"] += _num(composition.get("quantity"))
        entry["total_amount"] += _num(composition.get("amount"))

    items = sorted(menus.values(), key=lambda m: m["total_sales_with_service"], reverse=True)
    for item in items:
        item["compositions"] = _sorted_compositions(item["compositions"])
    return items


# --- BIR e-sales ---

def _business_day(order: Row) -> str:
    stamp = coerce_datetime(order.get("log_date")) or coerce_datetime(order.get("datetime"))
    return stamp.date().isoformat() if stamp else ""


def _or_sort_key(value: str):
    return (0, int(value), value) if value.isdigit() else (1, 0, value)


def bir_esales(orders: Iterable[Row], taxes: Iterable[Row]) -> Dict[str, Any]:
    taxes_by_order = _group_by_order(taxes)
    groups: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
    receipts: Dict[Tuple[str, str, str], List[str]] = {}

    for order in orders:
        key = (_business_day(order), _text(order.get("branch_code")), _text(order.get("terminal_no")))
        row = groups.get(key)
        if row is None:
            row = groups[key] = {
                "date": key[0],
                "branch_code": key[1],
                "branch_name": order.get("branch_name"),
                "terminal_no": key[2],
                "transactions": 0,
                "gross_sales": 0.0,
                "discounts": 0.0,
                "service_charge": 0.0,
                "net_sales": 0.0,
            }
            for field in TAX_FIELDS:
                row[field] = 0.0
            receipts[key] = []

        row["transactions"] += 1
        row["gross_sales"] += _num(order.get("total_amount"))
        row["discounts"] += _num(order.get("amount_discount"))
        row["service_charge"] += _num(order.get("service_charge"))
        row["net_sales"] += _num(order.get("net_total"))
        for tax in taxes_by_order.get(_order_key(order), []):
            for field in TAX_FIELDS:
                row[field] += _num(tax.get(field))
        if order.get("or_number"):
            receipts[key].append(_text(order.get("or_number")))

    rows = []
    for key in sorted(groups):
        row = groups[key]
        numbers = sorted(receipts[key], key=_or_sort_key)
        row["beginning_or"] = numbers[0] if numbers else None
        row["ending_or"] = numbers[-1] if numbers else None
        rows.append(row)

    totals: Dict[str, Any] = {"transactions": sum(r["transactions"] for r in rows)}
    for field in ("gross_sales", "discounts", "service_charge", "net_sales") + TAX_FIELDS:
        totals[field] = sum(r[field] for r in rows)

    return {"rows": rows, "totals": totals}
