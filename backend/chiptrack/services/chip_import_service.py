# Overview: Supplier UID intake: bulk import with count gate, single registration, spreadsheet parsing.

"""
Chip Import Service

Chips enter the registry from supplier paperwork, before they are physically
received. Every imported chip starts in EN_TRANSIT with a fresh chip_id and
no crypto material (salt/checksum are only generated by the ENCODE
transition). No history row is written at creation: the first history row is
the chip's first transition, which always starts from EN_TRANSIT.

COUNT GATE:
A batch whose UID count differs from the supplier order's total line
quantity is refused outright. Nothing is written and the caller gets
expected/provided/difference so the paperwork can be reconciled.
"""

from __future__ import annotations

import csv
import io
import zipfile

from flask import current_app
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import RfidChip, SupplierOrder
from ..models.chips import ChipStatus
from ..validation import ConflictError, NotFoundError, ValidationError, normalize_uid
from . import chip_security_service
from .concurrency import run_with_retry


SPREADSHEET_EXTENSIONS = {"xlsx", "xlsm"}
UID_HEADER = "uid"


class ImportAnomalyError(ValueError):
    """Provided UID count does not match the supplier order."""

    def __init__(self, *, expected: int, provided: int, order_number: str):
        self.expected = expected
        self.provided = provided
        self.difference = provided - expected
        self.order_number = order_number
        super().__init__(
            f"Supplier order {order_number} expects {expected} chips, "
            f"{provided} UIDs provided (difference {self.difference:+d})"
        )

    def to_dict(self) -> dict:
        return {
            "error": "Import anomaly: UID count does not match the supplier order",
            "expected": self.expected,
            "provided": self.provided,
            "difference": self.difference,
            "order_number": self.order_number,
        }


class DuplicateChipError(ConflictError):
    """UID already registered."""

    def __init__(self, existing: RfidChip):
        self.existing = existing.to_summary()
        super().__init__(f"UID {existing.uid} is already registered")


class ChipImportError(ValidationError):
    """Uploaded file cannot be read as a UID list."""


def _supplier_order(supplier_order_id: int) -> SupplierOrder:
    supplier_order = db.session.get(SupplierOrder, supplier_order_id)
    if supplier_order is None:
        raise NotFoundError("Supplier order not found")
    return supplier_order


def _new_chip(uid: str, chip_code: str, *, supplier_order_id, customer_id, user_id) -> RfidChip:
    return RfidChip(
        uid=uid,
        chip_id=chip_code,
        status=ChipStatus.EN_TRANSIT,
        supplier_order_id=supplier_order_id,
        customer_id=customer_id,
        created_by_user_id=user_id,
    )


def import_uids(
    supplier_order_id: int,
    uids: list,
    *,
    customer_id: int | None = None,
    user_id: int | None = None,
) -> dict:
    """
    Register a supplier batch of UIDs.

    Raises ImportAnomalyError when len(uids) != supplier order quantity.
    Blank UIDs are reported as errors, UIDs already known (in the registry
    or earlier in the batch) are skipped, counted and listed with their
    reason. A concurrent import of the same UIDs surfaces as ConflictError
    with nothing written.
    """
    if not isinstance(uids, list):
        raise ValidationError("uids must be a list")

    supplier_order = _supplier_order(supplier_order_id)
    expected = supplier_order.expected_quantity
    if len(uids) != expected:
        exc = ImportAnomalyError(
            expected=expected, provided=len(uids), order_number=supplier_order.order_number
        )
        current_app.logger.warning("import refused: %s", exc)
        raise exc

    error_limit = current_app.config.get("IMPORT_ERROR_LIST_LIMIT", 100)

    def _op() -> dict:
        errors: list[dict] = []
        duplicates: list[dict] = []
        error_count = 0
        skipped = 0
        imported: list[RfidChip] = []

        def add_error(row: int, uid, message: str) -> None:
            nonlocal error_count
            error_count += 1
            if len(errors) < error_limit:
                errors.append({"row": row, "uid": uid, "error": message})

        def add_duplicate(row: int, uid: str, message: str) -> None:
            nonlocal skipped
            skipped += 1
            if len(duplicates) < error_limit:
                duplicates.append({"row": row, "uid": uid, "reason": message})

        normalized: list[tuple[int, object, str | None]] = []
        for row, raw in enumerate(uids, start=1):
            try:
                normalized.append((row, raw, normalize_uid(raw)))
            except ValidationError:
                normalized.append((row, raw, None))

        candidates = {uid for _, _, uid in normalized if uid}
        known = set()
        if candidates:
            known = {
                uid for (uid,) in db.session.query(RfidChip.uid).filter(RfidChip.uid.in_(candidates)).all()
            }

        seen: set[str] = set()
        reserved_codes: set[str] = set()
        # Pending chips are flushed once, at commit
        with db.session.no_autoflush:
            for row, raw, uid in normalized:
                if uid is None:
                    add_error(row, raw, "UID is empty")
                    continue
                if uid in known:
                    add_duplicate(row, uid, "Duplicate UID (already registered)")
                    continue
                if uid in seen:
                    add_duplicate(row, uid, "Duplicate UID (repeated in this batch)")
                    continue
                seen.add(uid)
                chip = _new_chip(
                    uid,
                    chip_security_service.generate_unique_chip_id(reserved_codes),
                    supplier_order_id=supplier_order.id,
                    customer_id=customer_id,
                    user_id=user_id,
                )
                db.session.add(chip)
                imported.append(chip)

        try:
            db.session.commit()
        except IntegrityError as exc:
            db.session.rollback()
            raise ConflictError("Some UIDs were registered concurrently; batch not imported") from exc

        return {
            "supplier_order_id": supplier_order.id,
            "order_number": supplier_order.order_number,
            "total": len(uids),
            "imported": len(imported),
            "skipped_duplicates": skipped,
            "duplicates": duplicates,
            "error_count": error_count,
            "errors": errors,
            "errors_truncated": error_count > len(errors),
            "duplicates_truncated": skipped > len(duplicates),
        }

    result = run_with_retry(_op)
    current_app.logger.info(
        "imported %s chips for supplier order %s (%s duplicates skipped, %s errors)",
        result["imported"], result["order_number"], result["skipped_duplicates"], result["error_count"],
    )
    return result


def register_single(
    uid,
    *,
    supplier_order_id: int | None = None,
    customer_id: int | None = None,
    user_id: int | None = None,
) -> RfidChip:
    """One EN_TRANSIT chip. Duplicate UIDs raise DuplicateChipError with the existing chip."""
    uid = normalize_uid(uid)
    if supplier_order_id is not None:
        _supplier_order(supplier_order_id)

    existing = db.session.query(RfidChip).filter(RfidChip.uid == uid).first()
    if existing:
        raise DuplicateChipError(existing)

    chip = _new_chip(
        uid,
        chip_security_service.generate_unique_chip_id(),
        supplier_order_id=supplier_order_id,
        customer_id=customer_id,
        user_id=user_id,
    )
    db.session.add(chip)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing = db.session.query(RfidChip).filter(RfidChip.uid == uid).first()
        if existing:
            raise DuplicateChipError(existing)
        raise

    current_app.logger.info("registered chip %s (%s)", chip.chip_id, chip.uid)
    return chip


def _uid_column(headers) -> int:
    for index, header in enumerate(headers):
        if header is not None and str(header).strip().lower() == UID_HEADER:
            return index
    raise ChipImportError("No 'UID' column found in the header row")


def _collect(values, min_length: int) -> list[str]:
    uids = []
    for value in values:
        if value is None:
            continue
        text = str(value).strip()
        if len(text) < min_length:
            continue
        uids.append(text)
    return uids


def parse_uid_spreadsheet(filename: str, stream) -> list[str]:
    """
    Extract the UID column from an uploaded .xlsx/.xlsm or .csv file.

    The first row is the header; the UID column is matched case-insensitively.
    Values shorter than MIN_UID_LENGTH (blank cells, notes, totals) are ignored.
    """
    min_length = current_app.config.get("MIN_UID_LENGTH", 14)
    filename = filename or ""
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""

    if ext == "csv":
        try:
            text = stream.read().decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise ChipImportError("CSV file must be UTF-8 encoded") from exc
        rows = list(csv.reader(io.StringIO(text)))
        if not rows:
            raise ChipImportError("File is empty")
        column = _uid_column(rows[0])
        return _collect((row[column] if column < len(row) else None for row in rows[1:]), min_length)

    if ext in SPREADSHEET_EXTENSIONS:
        try:
            wb = load_workbook(stream, data_only=True, read_only=True)
        except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as exc:
            raise ChipImportError("File is not a readable Excel workbook") from exc
        try:
            rows = wb.active.iter_rows(values_only=True)
            headers = next(rows, None)
            if headers is None:
                raise ChipImportError("File is empty")
            column = _uid_column(headers)
            return _collect((row[column] if column < len(row) else None for row in rows), min_length)
        finally:
            wb.close()

    raise ChipImportError("Unsupported file format (expected .xlsx, .xlsm or .csv)")
