# Overview: Pytest coverage for the chip state machine and its guards/effects.

"""
Chip Lifecycle Tests

Every status change goes through lifecycle_service. These tests walk chips
through the transition table and verify:
1. Illegal sources are refused and nothing is written
2. Each successful transition appends exactly one history row
3. Guards refuse bad input before anything changes
4. Effects (crypto material, warranty orders, cascade archive) happen
   inside the same unit of work
"""

from datetime import datetime
from types import SimpleNamespace

import pytest
from sqlalchemy import text

from chiptrack.models import Order, RfidChip, RfidChipStatusHistory
from chiptrack.models.chips import ChipStatus
from chiptrack.services import chip_security_service, lifecycle_service, order_service
from chiptrack.services.concurrency import ConcurrentModificationError
from chiptrack.services.lifecycle_service import ChipAction, InvalidTransitionError
from chiptrack.validation import BusinessRuleError, ConflictError, NotFoundError, ValidationError


TEN_WORD_REASON = "Chip casing cracked during installation and can no longer be read"


def _history(chip):
    return lifecycle_service.get_status_history(chip.id)


def _to_retour_sav(chip, customer):
    return lifecycle_service.apply_transition(
        chip.id, ChipAction.REQUEST_SAV,
        owner_customer_id=customer.id, reason="Tag no longer reads",
    )


class TestTransitionTable:

    def test_allowed_actions_from_stock(self):
        actions = lifecycle_service.allowed_actions(ChipStatus.EN_STOCK)
        assert ChipAction.SHIP_TO_CLIENT in actions
        assert ChipAction.ACTIVATE in actions
        assert ChipAction.ARCHIVE in actions
        assert ChipAction.ENCODE not in actions

    def test_internal_actions_are_never_offered(self):
        assert ChipAction.CASCADE_ARCHIVE not in lifecycle_service.allowed_actions(ChipStatus.REMPLACEE)
        assert lifecycle_service.allowed_actions(ChipStatus.REMPLACEE) == [ChipAction.ARCHIVE]

    def test_archivee_is_terminal(self):
        assert lifecycle_service.allowed_actions(ChipStatus.ARCHIVEE) == []

    def test_is_legal_step(self):
        assert lifecycle_service.is_legal_step(ChipStatus.EN_TRANSIT, ChipStatus.EN_ATELIER)
        assert lifecycle_service.is_legal_step(ChipStatus.LIVREE, ChipStatus.INACTIVE)
        assert not lifecycle_service.is_legal_step(ChipStatus.EN_TRANSIT, ChipStatus.EN_STOCK)
        assert not lifecycle_service.is_legal_step(ChipStatus.ARCHIVEE, ChipStatus.ACTIVE)

    def test_validate_history_walk(self):
        good = [
            SimpleNamespace(action="RECEIVE_FROM_SUPPLIER", from_status="EN_TRANSIT", to_status="EN_ATELIER"),
            SimpleNamespace(action="ENCODE", from_status="EN_ATELIER", to_status="EN_STOCK"),
        ]
        assert lifecycle_service.validate_history_walk(good) == []

        gap = [
            SimpleNamespace(action="RECEIVE_FROM_SUPPLIER", from_status="EN_TRANSIT", to_status="EN_ATELIER"),
            SimpleNamespace(action="SHIP_TO_CLIENT", from_status="EN_STOCK", to_status="EN_LIVRAISON"),
        ]
        problems = lifecycle_service.validate_history_walk(gap)
        assert len(problems) == 1
        assert "expected EN_ATELIER" in problems[0]

        wrong_edge = [
            SimpleNamespace(action="ENCODE", from_status="EN_TRANSIT", to_status="EN_STOCK"),
        ]
        assert lifecycle_service.validate_history_walk(wrong_edge)

    def test_derive_timeline_keeps_first_scan(self):
        t1, t2 = datetime(2026, 1, 1), datetime(2026, 2, 1)
        rows = [
            SimpleNamespace(action="ACTIVATE", changed_at=t1),
            SimpleNamespace(action="ASSIGN_TO_CONTROL_POINT", changed_at=t2),
        ]
        timeline = lifecycle_service.derive_timeline(rows)
        assert timeline["first_scan_date"] == t1
        assert timeline["last_scan_date"] == t2
        assert timeline["assignment_date"] == t2
        assert timeline["encoding_date"] is None


class TestTransitions:

    def test_full_walk_records_one_row_per_transition(self, active_chip, customer_a, control_point_a):
        chip = active_chip(customer_a, control_point_a)

        rows = _history(chip)
        assert [row.action for row in rows] == [
            "RECEIVE_FROM_SUPPLIER", "ENCODE", "SHIP_TO_CLIENT",
            "CONFIRM_DELIVERY", "ASSIGN_TO_CONTROL_POINT",
        ]
        assert lifecycle_service.validate_history_walk(rows) == []
        assert chip.status == ChipStatus.ACTIVE
        assert chip.control_point_id == control_point_a.id
        assert chip.first_scan_date is not None

        report = lifecycle_service.audit_chip(chip)
        assert report["is_consistent"] is True
        assert report["checksum_valid"] is True

    def test_illegal_source_writes_nothing(self, transit_chip):
        chip = transit_chip()

        with pytest.raises(InvalidTransitionError) as exc:
            lifecycle_service.apply_transition(chip.id, ChipAction.ENCODE)

        assert exc.value.current_status == ChipStatus.EN_TRANSIT
        assert exc.value.action == ChipAction.ENCODE
        assert chip.status == ChipStatus.EN_TRANSIT
        assert chip.salt is None
        assert _history(chip) == []

    def test_archived_chip_cannot_be_archived_again(self, stock_chip):
        chip = stock_chip()
        lifecycle_service.apply_transition(chip.id, ChipAction.ARCHIVE, reason=TEN_WORD_REASON)

        with pytest.raises(InvalidTransitionError) as exc:
            lifecycle_service.apply_transition(chip.id, ChipAction.ARCHIVE, reason=TEN_WORD_REASON)
        assert exc.value.current_status == ChipStatus.ARCHIVEE

    def test_internal_action_cannot_be_requested(self, stock_chip):
        chip = stock_chip()
        with pytest.raises(ValidationError):
            lifecycle_service.apply_transition(chip.id, ChipAction.CASCADE_ARCHIVE)

    def test_unknown_chip(self, db_session):
        with pytest.raises(NotFoundError):
            lifecycle_service.apply_transition(
                "00000000-0000-4000-8000-000000000000", ChipAction.ENCODE
            )

    def test_malformed_chip_id(self, db_session):
        with pytest.raises(ValidationError):
            lifecycle_service.apply_transition("not-a-uuid", ChipAction.ENCODE)

    def test_foreign_chip_looks_missing(self, delivered_chip, customer_a, customer_b, control_point_b):
        chip = delivered_chip(customer_a)
        with pytest.raises(NotFoundError):
            lifecycle_service.apply_transition(
                chip.id, ChipAction.ASSIGN_TO_CONTROL_POINT,
                owner_customer_id=customer_b.id, control_point_id=control_point_b.id,
            )
        assert chip.status == ChipStatus.LIVREE

    def test_history_row_carries_user_and_notes(self, transit_chip, staff_user):
        chip = transit_chip()
        ctx = lifecycle_service.apply_transition(
            chip.id, ChipAction.RECEIVE_FROM_SUPPLIER, user_id=staff_user.id, notes="Box 12"
        )
        assert len(ctx.history) == 1
        row = _history(chip)[0]
        assert row.changed_by_user_id == staff_user.id
        assert row.notes == "Box 12"
        assert row.from_status == ChipStatus.EN_TRANSIT
        assert row.to_status == ChipStatus.EN_ATELIER
        assert chip.received_from_supplier_date == row.changed_at


class TestReceiveAndEncode:

    def test_receive_binds_supplier_order(self, transit_chip, make_supplier_order):
        supplier_order = make_supplier_order(1)
        chip = transit_chip()
        lifecycle_service.apply_transition(
            chip.id, ChipAction.RECEIVE_FROM_SUPPLIER, supplier_order_id=supplier_order.id
        )
        assert chip.supplier_order_id == supplier_order.id

    def test_receive_refuses_other_supplier_order(self, transit_chip, make_supplier_order):
        first, second = make_supplier_order(1), make_supplier_order(1)
        chip = transit_chip(supplier_order_id=first.id)
        with pytest.raises(BusinessRuleError):
            lifecycle_service.apply_transition(
                chip.id, ChipAction.RECEIVE_FROM_SUPPLIER, supplier_order_id=second.id
            )
        assert chip.status == ChipStatus.EN_TRANSIT

    def test_encode_generates_crypto_material(self, transit_chip):
        chip = transit_chip()
        lifecycle_service.apply_transition(chip.id, ChipAction.RECEIVE_FROM_SUPPLIER)
        ctx = lifecycle_service.apply_transition(chip.id, ChipAction.ENCODE)

        payload = ctx.outputs["tag_payload"]
        assert chip.status == ChipStatus.EN_STOCK
        assert chip.is_encoded
        assert payload["chip_uuid"] == chip.id
        assert payload["block8_data"] == chip.checksum
        assert payload["block4_data"] == chip_security_service.encode_block4(chip.chip_id)
        assert chip_security_service.validate_checksum(chip.uid, chip.salt, chip.chip_id, chip.checksum)

    def test_encode_refuses_already_encoded_chip(self, transit_chip, db_session):
        chip = transit_chip()
        lifecycle_service.apply_transition(chip.id, ChipAction.RECEIVE_FROM_SUPPLIER)
        chip.salt = "existing-salt"
        chip.checksum = "00" * 16
        db_session.commit()

        with pytest.raises(ConflictError):
            lifecycle_service.apply_transition(chip.id, ChipAction.ENCODE)
        assert chip.status == ChipStatus.EN_ATELIER
        assert chip.salt == "existing-salt"


class TestShippingAndDelivery:

    def test_ship_binds_order_and_reserves_stock(self, stock_chip, make_order, customer_a):
        order = make_order(customer_a, 5, status="PAID", is_stock_reserved=False)
        chip = stock_chip()

        ctx = lifecycle_service.apply_transition(
            chip.id, ChipAction.SHIP_TO_CLIENT, client_order_id=order.id
        )

        assert chip.status == ChipStatus.EN_LIVRAISON
        assert chip.customer_id == customer_a.id
        assert chip.client_order_id == order.id
        assert chip.order_id is None
        assert ctx.outputs["packaging_code"].startswith("PKG-")
        assert order.is_stock_reserved is True

    def test_ship_keeps_given_packaging_code(self, stock_chip, make_order, customer_a):
        order = make_order(customer_a, 5, status="PAID")
        chip = stock_chip()
        lifecycle_service.apply_transition(
            chip.id, ChipAction.SHIP_TO_CLIENT, client_order_id=order.id, packaging_code="BOX-42"
        )
        assert chip.packaging_code == "BOX-42"

    def test_ship_refuses_cancelled_order(self, stock_chip, make_order, customer_a):
        order = make_order(customer_a, 5, status="CANCELLED")
        chip = stock_chip()
        with pytest.raises(BusinessRuleError):
            lifecycle_service.apply_transition(chip.id, ChipAction.SHIP_TO_CLIENT, client_order_id=order.id)
        assert chip.status == ChipStatus.EN_STOCK
        assert chip.customer_id is None

    def test_ship_requires_order(self, stock_chip):
        chip = stock_chip()
        with pytest.raises(ValidationError):
            lifecycle_service.apply_transition(chip.id, ChipAction.SHIP_TO_CLIENT)

    def test_confirm_delivery_wrong_packaging_code(self, stock_chip, make_order, customer_a):
        order = make_order(customer_a, 5, status="PAID")
        chip = stock_chip()
        lifecycle_service.apply_transition(chip.id, ChipAction.SHIP_TO_CLIENT, client_order_id=order.id)

        with pytest.raises(ValidationError):
            lifecycle_service.apply_transition(
                chip.id, ChipAction.CONFIRM_DELIVERY,
                owner_customer_id=customer_a.id, packaging_code="PKG-WRONG",
            )
        assert chip.status == ChipStatus.EN_LIVRAISON

    def test_confirm_delivery_ignores_code_case(self, stock_chip, make_order, customer_a):
        order = make_order(customer_a, 5, status="PAID")
        chip = stock_chip()
        lifecycle_service.apply_transition(
            chip.id, ChipAction.SHIP_TO_CLIENT, client_order_id=order.id, packaging_code="BOX-42"
        )
        lifecycle_service.apply_transition(
            chip.id, ChipAction.CONFIRM_DELIVERY, owner_customer_id=customer_a.id, packaging_code="box-42"
        )
        assert chip.status == ChipStatus.LIVREE
        assert chip.delivered_to_client_date is not None

    def test_confirm_delivery_needs_active_subscription(self, stock_chip, make_order, customer_a, db_session):
        order = make_order(customer_a, 5, status="PAID")
        chip = stock_chip()
        lifecycle_service.apply_transition(chip.id, ChipAction.SHIP_TO_CLIENT, client_order_id=order.id)
        customer_a.is_active = False
        db_session.commit()

        with pytest.raises(BusinessRuleError):
            lifecycle_service.apply_transition(
                chip.id, ChipAction.CONFIRM_DELIVERY,
                owner_customer_id=customer_a.id, packaging_code=chip.packaging_code,
            )
        assert chip.status == ChipStatus.EN_LIVRAISON


class TestControlPoints:

    def test_cross_customer_control_point_refused(self, delivered_chip, customer_a, control_point_b):
        chip = delivered_chip(customer_a)
        with pytest.raises(BusinessRuleError):
            lifecycle_service.apply_transition(
                chip.id, ChipAction.ASSIGN_TO_CONTROL_POINT, control_point_id=control_point_b.id
            )
        assert chip.status == ChipStatus.LIVREE
        assert chip.control_point_id is None

    def test_inactive_control_point_refused(self, delivered_chip, customer_a, control_point_a, db_session):
        control_point_a.is_active = False
        db_session.commit()
        chip = delivered_chip(customer_a)
        with pytest.raises(BusinessRuleError):
            lifecycle_service.apply_transition(
                chip.id, ChipAction.ASSIGN_TO_CONTROL_POINT, control_point_id=control_point_a.id
            )

    def test_missing_control_point(self, delivered_chip, customer_a):
        chip = delivered_chip(customer_a)
        with pytest.raises(NotFoundError):
            lifecycle_service.apply_transition(
                chip.id, ChipAction.ASSIGN_TO_CONTROL_POINT, control_point_id=99999
            )

    def test_deactivate_clears_control_point(self, active_chip, customer_a, control_point_a):
        chip = active_chip(customer_a, control_point_a)
        lifecycle_service.apply_transition(chip.id, ChipAction.DEACTIVATE, owner_customer_id=customer_a.id)
        assert chip.status == ChipStatus.INACTIVE
        assert chip.control_point_id is None
        assert chip.deactivation_date is not None

    def test_inactive_chip_can_be_reassigned(self, active_chip, customer_a, control_point_a):
        chip = active_chip(customer_a, control_point_a)
        lifecycle_service.apply_transition(chip.id, ChipAction.DEACTIVATE)
        lifecycle_service.apply_transition(
            chip.id, ChipAction.ASSIGN_TO_CONTROL_POINT, control_point_id=control_point_a.id
        )
        assert chip.status == ChipStatus.ACTIVE
        assert lifecycle_service.audit_chip(chip)["is_consistent"] is True


class TestSav:

    def test_request_sav_opens_warranty_order(self, active_chip, customer_a, control_point_a, db_session):
        chip = active_chip(customer_a, control_point_a)
        ctx = _to_retour_sav(chip, customer_a)

        warranty = ctx.outputs["warranty_order"]
        assert chip.status == ChipStatus.RETOUR_SAV
        assert chip.sav_reason == "Tag no longer reads"
        assert chip.sav_return_date is not None
        assert warranty.is_warranty is True
        assert warranty.chips_quantity == 1
        assert warranty.total_amount_cents == 0
        assert warranty.status == "PENDING"
        assert warranty.customer_id == customer_a.id
        assert warranty.order_number.startswith("WARRANTY-")
        assert db_session.query(Order).filter(Order.is_warranty.is_(True)).count() == 1

    def test_request_sav_requires_reason(self, active_chip, customer_a, control_point_a, db_session):
        chip = active_chip(customer_a, control_point_a)
        with pytest.raises(ValidationError):
            lifecycle_service.apply_transition(chip.id, ChipAction.REQUEST_SAV, reason="   ")
        assert chip.status == ChipStatus.ACTIVE
        assert db_session.query(Order).filter(Order.is_warranty.is_(True)).count() == 0

    def test_failed_warranty_order_aborts_the_transition(self, active_chip, customer_a, control_point_a,
                                                         db_session, monkeypatch):
        chip = active_chip(customer_a, control_point_a)
        before = len(_history(chip))

        def fail(*args, **kwargs):
            raise RuntimeError("order numbering unavailable")

        monkeypatch.setattr(order_service, "create_warranty_order", fail)
        with pytest.raises(RuntimeError):
            _to_retour_sav(chip, customer_a)

        assert chip.status == ChipStatus.ACTIVE
        assert chip.sav_reason is None
        assert chip.sav_return_date is None
        assert len(_history(chip)) == before
        assert db_session.query(Order).filter(Order.is_warranty.is_(True)).count() == 0

    def test_replace_with_delivered_chip_cascades_to_archive(self, active_chip, delivered_chip,
                                                             customer_a, control_point_a):
        chip = active_chip(customer_a, control_point_a)
        _to_retour_sav(chip, customer_a)
        lifecycle_service.apply_transition(chip.id, ChipAction.RECEIVE_SAV)
        replacement = delivered_chip(customer_a)

        ctx = lifecycle_service.apply_transition(
            chip.id, ChipAction.REPLACE, replacement_chip_id=replacement.id
        )

        assert chip.status == ChipStatus.ARCHIVEE
        assert chip.replacement_chip_id == replacement.id
        assert [row.action for row in ctx.history] == ["REPLACE", "CASCADE_ARCHIVE"]
        rows = _history(chip)
        assert rows[-2].to_status == ChipStatus.REMPLACEE
        assert rows[-1].to_status == ChipStatus.ARCHIVEE
        assert lifecycle_service.validate_history_walk(rows) == []
        assert replacement.status == ChipStatus.LIVREE

    def test_replace_with_active_chip_stops_at_remplacee(self, active_chip, customer_a, control_point_a):
        chip = active_chip(customer_a, control_point_a)
        replacement = active_chip(customer_a, control_point_a)
        _to_retour_sav(chip, customer_a)

        ctx = lifecycle_service.apply_transition(
            chip.id, ChipAction.REPLACE, replacement_chip_id=replacement.id
        )
        assert chip.status == ChipStatus.REMPLACEE
        assert len(ctx.history) == 1
        assert ctx.outputs["replacement_chip"].id == replacement.id

    def test_chip_cannot_replace_itself(self, active_chip, customer_a, control_point_a):
        chip = active_chip(customer_a, control_point_a)
        _to_retour_sav(chip, customer_a)
        with pytest.raises(ValidationError):
            lifecycle_service.apply_transition(chip.id, ChipAction.REPLACE, replacement_chip_id=chip.id)
        assert chip.status == ChipStatus.RETOUR_SAV

    def test_replacement_from_other_customer_refused(self, active_chip, delivered_chip,
                                                     customer_a, customer_b, control_point_a):
        chip = active_chip(customer_a, control_point_a)
        foreign = delivered_chip(customer_b)
        _to_retour_sav(chip, customer_a)
        with pytest.raises(BusinessRuleError):
            lifecycle_service.apply_transition(chip.id, ChipAction.REPLACE, replacement_chip_id=foreign.id)
        assert chip.status == ChipStatus.RETOUR_SAV
        assert chip.replacement_chip_id is None

    def test_missing_replacement(self, active_chip, customer_a, control_point_a):
        chip = active_chip(customer_a, control_point_a)
        _to_retour_sav(chip, customer_a)
        with pytest.raises(NotFoundError):
            lifecycle_service.apply_transition(
                chip.id, ChipAction.REPLACE,
                replacement_chip_id="00000000-0000-4000-8000-000000000000",
            )


class TestArchive:

    def test_archive_requires_ten_words(self, stock_chip):
        chip = stock_chip()
        with pytest.raises(ValidationError):
            lifecycle_service.apply_transition(chip.id, ChipAction.ARCHIVE, reason="Broken chip")
        assert chip.status == ChipStatus.EN_STOCK

    def test_archive_stores_reason_as_notes(self, stock_chip):
        chip = stock_chip()
        lifecycle_service.apply_transition(chip.id, ChipAction.ARCHIVE, reason=TEN_WORD_REASON)
        assert chip.status == ChipStatus.ARCHIVEE
        assert _history(chip)[-1].notes == TEN_WORD_REASON

    def test_archive_from_transit(self, transit_chip):
        chip = transit_chip()
        lifecycle_service.apply_transition(chip.id, ChipAction.ARCHIVE, reason=TEN_WORD_REASON)
        assert chip.status == ChipStatus.ARCHIVEE


class TestAuditAndConcurrency:

    def test_audit_reports_timestamp_drift(self, stock_chip, db_session):
        chip = stock_chip()
        chip.encoding_date = datetime(2020, 1, 1)
        db_session.commit()

        report = lifecycle_service.audit_chip(chip)
        assert report["is_consistent"] is False
        assert [m["field"] for m in report["timestamp_mismatches"]] == ["encoding_date"]
        assert report["walk_valid"] is True

    def test_audit_reports_status_drift(self, stock_chip, db_session):
        chip = stock_chip()
        db_session.execute(
            text("UPDATE rfid_chips SET status = 'ACTIVE' WHERE id = :id"), {"id": chip.id}
        )
        db_session.commit()

        report = lifecycle_service.audit_chip(db_session.get(RfidChip, chip.id))
        assert report["status_matches_history"] is False
        assert report["is_consistent"] is False

    def test_audit_reports_bad_checksum(self, stock_chip, db_session):
        chip = stock_chip()
        chip.checksum = "00" * 16
        db_session.commit()
        assert lifecycle_service.audit_chip(chip)["checksum_valid"] is False

    def test_stale_version_is_not_applied(self, stock_chip, make_order, customer_a, db_session):
        order = make_order(customer_a, 5, status="PAID")
        chip = stock_chip()
        loaded_version = chip.version_id

        # Someone else commits a change between our read and our write
        db_session.execute(
            text("UPDATE rfid_chips SET version_id = version_id + 1 WHERE id = :id"), {"id": chip.id}
        )

        with pytest.raises(ConcurrentModificationError):
            lifecycle_service.apply_transition(chip.id, ChipAction.SHIP_TO_CLIENT, client_order_id=order.id)

        fresh = db_session.get(RfidChip, chip.id)
        assert fresh.status == ChipStatus.EN_STOCK
        assert fresh.version_id == loaded_version
        assert db_session.query(RfidChipStatusHistory).filter_by(rfid_chip_id=chip.id).count() == 2
