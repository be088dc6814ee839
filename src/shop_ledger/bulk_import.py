"""Bulk import of externally supplied rows (CSV) into the ledger.

Rows arrive already parsed, together with a mapping from column header to
model field name (or ``"ignore"``). The whole batch is validated and written
in one unit of work; any error rejects it without partial writes.

Identifier policy: explicit ids are kept as given; rows without an id get
``max(existing numeric ids, explicit batch ids) + 1``, incremented per row.
An explicit id that already exists, or that appears twice in the batch,
rejects the import with :class:`DuplicateIdError`.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence

from . import log
from .constants import IGNORE_COLUMN, Description, ImportEntity, SupplierTransactionType, TransactionType
from .core_logic import (
    DuplicateIdError,
    RuntimeContext,
    ValidationError,
    get_supplier_in,
    insert_customer_transaction,
    insert_supplier_transaction,
    next_numeric_id,
    normalize_barcodes,
    resolve_timestamp,
)
from .data_manager import Customer, LedgerSnapshot, Product, Supplier


IMPORT_FIELDS: Mapping[ImportEntity, FrozenSet[str]] = {
    ImportEntity.CUSTOMERS: frozenset({"id", "name", "phone", "email", "balance", "settlementDay"}),
    ImportEntity.SUPPLIERS: frozenset({"id", "name", "contact", "phone", "category", "balance", "visitDay"}),
    ImportEntity.PRODUCTS: frozenset(
        {
            "id", "name", "category", "description", "barcodes", "purchasePrice",
            "sellingPrice", "stock", "minStock", "supplierId",
        }
    ),
}

REQUIRED_FIELDS: Mapping[ImportEntity, FrozenSet[str]] = {
    ImportEntity.CUSTOMERS: frozenset({"name"}),
    ImportEntity.SUPPLIERS: frozenset({"name"}),
    ImportEntity.PRODUCTS: frozenset({"name", "sellingPrice"}),
}

_NON_NUMERIC = re.compile(r"[^0-9.\-]+")


@dataclass(frozen=True)
class ImportResult:
    entity: ImportEntity
    imported_ids: List[str] = field(default_factory=list)
    opening_balance_ids: List[str] = field(default_factory=list)


def parse_number(raw: Any, *, row: int, column: str) -> Optional[Decimal]:
    """Parse a spreadsheet cell, tolerating currency and grouping noise.

    ``"1 250,00 DA"`` reads as ``1250.00``. When a cell holds both a comma
    and a dot, the one that comes last is the decimal separator and the other
    is dropped as grouping (``"1.250,00"`` and ``"1,250.00"`` both give
    ``1250.00``); a lone comma is a decimal separator. Everything except
    digits, dot and minus is then dropped. Empty cells give ``None``.

    Raises:
        ValidationError: If nothing numeric remains or the value is not finite.
    """

    if raw is None:
        return None
    if isinstance(raw, (int, float, Decimal)):
        value = Decimal(str(raw))
        if not value.is_finite():
            log.error("Row %d: '%s' is not a finite number (%r)", row, column, raw)
            raise ValidationError(f"Row {row}: {column} must be a finite number, got {raw!r}")
        return value
    text = str(raw).strip()
    if not text:
        return None
    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "")
        else:
            text = text.replace(",", "")
    text = text.replace(",", ".")
    cleaned = _NON_NUMERIC.sub("", text)
    try:
        return Decimal(cleaned)
    except InvalidOperation as exc:
        log.error("Row %d: '%s' is not a number (%r)", row, column, raw)
        raise ValidationError(f"Row {row}: {column} must be a number, got {raw!r}") from exc


def _whole_number(raw: Any, *, row: int, column: str) -> int:
    value = parse_number(raw, row=row, column=column)
    if value is None:
        return 0
    if value != value.to_integral_value() or value < 0:
        log.error("Row %d: '%s' must be a whole number >= 0 (%r)", row, column, raw)
        raise ValidationError(f"Row {row}: {column} must be a whole number of zero or more")
    return int(value)


def _text(record: Mapping[str, Any], key: str) -> str:
    value = record.get(key)
    return "" if value is None else str(value).strip()


def validate_mapping(entity: ImportEntity, column_mapping: Mapping[str, str]) -> Dict[str, str]:
    """Check the header-to-field mapping and drop ignored columns.

    Raises:
        ValidationError: If a target field is unknown, mapped twice, or a
            mandatory field is unmapped.
    """

    allowed = IMPORT_FIELDS[entity]
    active = {header: target for header, target in column_mapping.items() if target != IGNORE_COLUMN}
    unknown = sorted({target for target in active.values() if target not in allowed})
    if unknown:
        log.error("Import mapping for %s uses unknown fields: %s", entity.value, unknown)
        raise ValidationError(f"Unknown fields in column mapping: {', '.join(unknown)}")
    repeated = sorted(target for target, count in Counter(active.values()).items() if count > 1)
    if repeated:
        raise ValidationError(f"Fields mapped more than once: {', '.join(repeated)}")
    missing = sorted(REQUIRED_FIELDS[entity] - set(active.values()))
    if missing:
        log.error("Import mapping for %s is missing mandatory fields: %s", entity.value, missing)
        raise ValidationError(f"Mandatory fields are not mapped: {', '.join(missing)}")
    return active


def project_rows(rows: Sequence[Mapping[str, Any]], mapping: Mapping[str, str]) -> List[Dict[str, Any]]:
    """Rename columns to model fields and skip fully blank rows."""

    records: List[Dict[str, Any]] = []
    for row in rows:
        record = {target: row.get(header) for header, target in mapping.items()}
        if all(value is None or str(value).strip() == "" for value in record.values()):
            continue
        records.append(record)
    return records


def check_ids(existing: Mapping[str, Any], records: Sequence[Mapping[str, Any]]) -> List[str]:
    """Return the explicit ids of ``records`` after the duplicate checks.

    Raises:
        DuplicateIdError: If an explicit id repeats within the batch or
            already exists.
    """

    explicit = [_text(record, "id") for record in records if _text(record, "id")]
    in_batch = sorted(identifier for identifier, count in Counter(explicit).items() if count > 1)
    if in_batch:
        log.warning("Import rejected: ids repeated within the batch: %s", in_batch)
        raise DuplicateIdError(f"Duplicate ids within the import: {', '.join(in_batch)}")
    clashing = sorted(identifier for identifier in explicit if identifier in existing)
    if clashing:
        log.warning("Import rejected: ids already exist: %s", clashing)
        raise DuplicateIdError(f"Ids already exist: {', '.join(clashing)}")
    return explicit


def _require_row_name(record: Mapping[str, Any], row: int) -> str:
    name = _text(record, "name")
    if not name:
        log.error("Row %d: name is empty", row)
        raise ValidationError(f"Row {row}: name is required")
    return name


def _opening_balance(snapshot: LedgerSnapshot, entity: ImportEntity, owner_id: str, balance: Decimal) -> str:
    if entity is ImportEntity.CUSTOMERS:
        transaction = insert_customer_transaction(
            snapshot,
            customer_id=owner_id,
            transaction_type=TransactionType.DEBT if balance > 0 else TransactionType.PAYMENT,
            amount=abs(balance),
            description=Description.OPENING_BALANCE,
        )
    else:
        transaction = insert_supplier_transaction(
            snapshot,
            supplier_id=owner_id,
            transaction_type=SupplierTransactionType.PURCHASE if balance > 0 else SupplierTransactionType.PAYMENT,
            amount=abs(balance),
            description=Description.OPENING_BALANCE,
        )
    return transaction.id


def _build_product(snapshot: LedgerSnapshot, record: Mapping[str, Any], product_id: str, row: int) -> Product:
    name = _require_row_name(record, row)
    selling_price = parse_number(record.get("sellingPrice"), row=row, column="sellingPrice")
    if selling_price is None or selling_price <= 0:
        log.error("Row %d: sellingPrice must be greater than zero", row)
        raise ValidationError(f"Row {row}: sellingPrice must be greater than zero")
    purchase_price = parse_number(record.get("purchasePrice"), row=row, column="purchasePrice") or Decimal("0")
    if purchase_price < 0:
        raise ValidationError(f"Row {row}: purchasePrice cannot be negative")

    barcodes_raw = record.get("barcodes")
    if isinstance(barcodes_raw, str):
        barcodes = normalize_barcodes(barcodes_raw.split(";"))
    else:
        barcodes = normalize_barcodes(barcodes_raw or ())

    supplier_id = _text(record, "supplierId") or None
    if supplier_id is not None:
        get_supplier_in(snapshot, supplier_id)

    return Product(
        id=product_id,
        name=name,
        category=_text(record, "category"),
        description=_text(record, "description"),
        barcodes=barcodes,
        purchase_price=purchase_price,
        selling_price=selling_price,
        stock=_whole_number(record.get("stock"), row=row, column="stock"),
        min_stock=_whole_number(record.get("minStock"), row=row, column="minStock"),
        supplier_id=supplier_id,
    )


def _check_batch_barcodes(snapshot: LedgerSnapshot, products: Sequence[Product]) -> None:
    owners: Dict[str, str] = {}
    for product in snapshot.products.values():
        for code in product.barcodes:
            owners[code] = product.id
    for product in products:
        for code in product.barcodes:
            if code in owners:
                log.error("Barcode '%s' of imported product '%s' already used by '%s'", code, product.id, owners[code])
                raise ValidationError(f"Barcode '{code}' is already used by product '{owners[code]}'")
            owners[code] = product.id


def import_rows(
    context: RuntimeContext,
    entity: ImportEntity,
    rows: Sequence[Mapping[str, Any]],
    column_mapping: Mapping[str, str],
) -> ImportResult:
    """Import ``rows`` into the ``entity`` collection, all or nothing.

    A customer or supplier row with a non-zero ``balance`` is created at zero
    and receives an opening-balance transaction, so the stored balance is
    always backed by the transaction log.

    Args:
        context (RuntimeContext): Runtime context holding the repository.
        entity (ImportEntity): Target collection.
        rows (Sequence[Mapping[str, Any]]): Parsed rows keyed by header.
        column_mapping (Mapping[str, str]): Header to model field name, or
            ``"ignore"``.

    Returns:
        ImportResult: Ids of the created records and opening transactions.

    Raises:
        ValidationError: For mapping problems and invalid rows.
        DuplicateIdError: For explicit ids that collide.
        NotFoundError: If a product row references an unknown supplier.
    """

    entity = ImportEntity(entity)
    mapping = validate_mapping(entity, column_mapping)
    records = project_rows(rows, mapping)
    if not records:
        raise ValidationError("The import contains no data rows")

    with context.repository.transaction() as snapshot:
        collection: Mapping[str, Any] = {
            ImportEntity.CUSTOMERS: snapshot.customers,
            ImportEntity.SUPPLIERS: snapshot.suppliers,
            ImportEntity.PRODUCTS: snapshot.products,
        }[entity]
        explicit_ids = check_ids(collection, records)
        next_id = next_numeric_id(collection.keys(), explicit_ids)

        assigned: List[str] = []
        for record in records:
            identifier = _text(record, "id")
            if not identifier:
                identifier = str(next_id)
                next_id += 1
            assigned.append(identifier)

        opening_ids: List[str] = []
        now = resolve_timestamp(None)
        if entity is ImportEntity.PRODUCTS:
            products = [
                _build_product(snapshot, record, identifier, row)
                for row, (record, identifier) in enumerate(zip(records, assigned), 1)
            ]
            _check_batch_barcodes(snapshot, products)
            for product in products:
                snapshot.products[product.id] = product
        else:
            for row, (record, identifier) in enumerate(zip(records, assigned), 1):
                name = _require_row_name(record, row)
                balance = parse_number(record.get("balance"), row=row, column="balance") or Decimal("0")
                if entity is ImportEntity.CUSTOMERS:
                    snapshot.customers[identifier] = Customer(
                        id=identifier,
                        name=name,
                        phone=_text(record, "phone"),
                        email=_text(record, "email"),
                        created_at=now,
                        settlement_day=_text(record, "settlementDay") or None,
                    )
                else:
                    snapshot.suppliers[identifier] = Supplier(
                        id=identifier,
                        name=name,
                        category=_text(record, "category"),
                        contact=_text(record, "contact"),
                        phone=_text(record, "phone"),
                        visit_day=_text(record, "visitDay") or None,
                        created_at=now,
                    )
                if balance != 0:
                    opening_ids.append(_opening_balance(snapshot, entity, identifier, balance))

    log.info(
        "Imported %d %s (%d opening balances)",
        len(assigned),
        entity.value,
        len(opening_ids),
    )
    return ImportResult(entity=entity, imported_ids=assigned, opening_balance_ids=opening_ids)
