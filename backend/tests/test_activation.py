# Overview: Pytest coverage for client chip activation and scan validation.

"""
Chip Activation Tests

SECURITY TESTS: a tag is only accepted when UID, block 1, block 4 and
block 8 all agree with the registry. Rejections must leave the chip
untouched and leave a trace in security_events.

BUSINESS TESTS: subscription, chip quota and FIFO assignment to the oldest
delivered order with a free slot.
"""

from datetime import datetime

import pytest

from chiptrack.models import Order, RfidChipStatusHistory, SecurityEvent
from chiptrack.models.chips import ChipStatus
from chiptrack.models.security import SEVERITY_CRITICAL
from chiptrack.services import activation_service, lifecycle_service
from chiptrack.services.chip_security_service import (
    BLOCK4_MISMATCH,
    CHECKSUM_MISMATCH,
    CHIP_ID_MISMATCH,
    UNKNOWN_UID,
    SecurityViolationError,
)
from chiptrack.services.lifecycle_service import ChipAction, InvalidTransitionError
from chiptrack.validation import BusinessRuleError, ValidationError


def _activate(customer, read, **overrides):
    data = {**read, **overrides}
    return activation_service.activate_chip(
        customer.id, data["uid"], data["chip_id"], data["block4_data"], data["block8_data"]
    )


def _history_count(db_session, chip):
    return db_session.query(RfidChipStatusHistory).filter_by(rfid_chip_id=chip.id).count()


def _rejections(db_session):
    return (
        db_session.query(SecurityEvent)
        .filter_by(event_type="CHIP_ACTIVATION_REJECTED")
        .order_by(SecurityEvent.id.asc())
        .all()
    )


def _scan_rejections(db_session):
    return db_session.query(SecurityEvent).filter_by(event_type="CHIP_SCAN_REJECTED").all()


class TestActivationHappyPath:

    def test_activation_binds_chip_to_order(self, stock_chip, tag_read, make_order, customer_a, db_session):
        order = make_order(customer_a, 3)
        chip = stock_chip()

        result = _activate(customer_a, tag_read(chip))

        assert result["order_number"] == order.order_number
        assert result["assigned"] == 1
        assert result["total"] == 3
        assert result["remaining"] == 2
        assert result["order_full"] is False
        assert result["chip"]["status"] == "INACTIVE"

        assert chip.status == ChipStatus.INACTIVE
        assert chip.customer_id == customer_a.id
        assert chip.order_id == order.id
        assert chip.first_scan_date is not None
        assert chip.last_scan_date == chip.first_scan_date

        rows = lifecycle_service.get_status_history(chip.id)
        assert rows[-1].action == "ACTIVATE"
        assert rows[-1].from_status == ChipStatus.EN_STOCK

        activated = db_session.query(SecurityEvent).filter_by(event_type="CHIP_ACTIVATED").one()
        assert activated.success is True
        assert activated.uid == chip.uid

    def test_activation_bumps_order_version(self, stock_chip, tag_read, make_order, customer_a):
        order = make_order(customer_a, 3)
        before = order.version_id
        _activate(customer_a, tag_read(stock_chip()))
        assert order.version_id == before + 1
        assert order.last_assignment_at is not None

    def test_uid_separators_and_case_are_ignored(self, stock_chip, tag_read, make_order, customer_a):
        make_order(customer_a, 3)
        chip = stock_chip("04:a1:b2:c3:d4:e5:f6")
        read = tag_read(chip)
        _activate(customer_a, read, uid="04:a1:b2:c3:d4:e5:f6")
        assert chip.status == ChipStatus.INACTIVE

    def test_fifo_fills_oldest_delivered_order_first(self, stock_chip, tag_read, make_order, customer_a):
        # Created first but delivered later: id order must not win over delivery order
        day5 = make_order(customer_a, 2, delivered_at=datetime(2026, 1, 5))
        day1 = make_order(customer_a, 2, delivered_at=datetime(2026, 1, 1))

        results = [_activate(customer_a, tag_read(stock_chip())) for _ in range(4)]

        assert [r["order_number"] for r in results] == [
            day1.order_number, day1.order_number, day5.order_number, day5.order_number,
        ]
        assert [r["remaining"] for r in results] == [1, 0, 1, 0]
        assert results[1]["order_full"] is True
        assert day1.is_stock_reserved is False
        assert day5.is_stock_reserved is False

        fifth = stock_chip()
        with pytest.raises(BusinessRuleError):
            _activate(customer_a, tag_read(fifth))
        assert fifth.status == ChipStatus.EN_STOCK
        assert fifth.customer_id is None

    def test_undelivered_and_warranty_orders_are_skipped(self, stock_chip, tag_read, make_order,
                                                          customer_a, db_session):
        make_order(customer_a, 5, status="PAID")
        warranty = make_order(customer_a, 5)
        warranty.is_warranty = True
        db_session.commit()

        with pytest.raises(BusinessRuleError):
            _activate(customer_a, tag_read(stock_chip()))

    def test_other_customers_orders_are_not_used(self, stock_chip, tag_read, make_order, customer_a, customer_b):
        make_order(customer_b, 5)
        with pytest.raises(BusinessRuleError):
            _activate(customer_a, tag_read(stock_chip()))


class TestAntiClone:

    def test_foreign_block8_is_rejected_without_writes(self, stock_chip, tag_read, make_order,
                                                      customer_a, db_session):
        make_order(customer_a, 3)
        chip = stock_chip()
        other = stock_chip()
        history_before = _history_count(db_session, chip)

        with pytest.raises(SecurityViolationError) as exc:
            _activate(customer_a, tag_read(chip), block8_data=other.checksum)

        assert exc.value.reason_code == CHECKSUM_MISMATCH
        assert chip.status == ChipStatus.EN_STOCK
        assert chip.customer_id is None
        assert chip.order_id is None
        assert _history_count(db_session, chip) == history_before

        events = _rejections(db_session)
        assert len(events) == 1
        assert events[0].reason == CHECKSUM_MISMATCH
        assert events[0].severity == SEVERITY_CRITICAL
        assert events[0].success is False
        assert events[0].uid == chip.uid
        assert events[0].customer_id == customer_a.id

    def test_cloned_block1_is_rejected(self, stock_chip, tag_read, make_order, customer_a, db_session):
        make_order(customer_a, 3)
        chip = stock_chip()
        other = stock_chip()

        with pytest.raises(SecurityViolationError) as exc:
            _activate(customer_a, tag_read(chip), chip_id=other.id)
        assert exc.value.reason_code == CHIP_ID_MISMATCH
        assert _rejections(db_session)[0].reason == CHIP_ID_MISMATCH

    def test_forged_block4_is_rejected(self, stock_chip, tag_read, make_order, customer_a, db_session):
        make_order(customer_a, 3)
        chip = stock_chip()
        other = stock_chip()

        with pytest.raises(SecurityViolationError) as exc:
            _activate(customer_a, tag_read(chip), block4_data=tag_read(other)["block4_data"])
        assert exc.value.reason_code == BLOCK4_MISMATCH
        assert chip.status == ChipStatus.EN_STOCK

    def test_unknown_uid(self, stock_chip, tag_read, make_order, customer_a, db_session):
        make_order(customer_a, 3)
        read = tag_read(stock_chip())

        with pytest.raises(SecurityViolationError) as exc:
            _activate(customer_a, read, uid="04FFFFFFFFFFFF")

        assert exc.value.reason_code == UNKNOWN_UID
        event = _rejections(db_session)[0]
        assert event.reason == UNKNOWN_UID
        assert event.uid == "04FFFFFFFFFFFF"

    def test_chip_reserved_for_another_customer_is_unknown(self, stock_chip, tag_read, make_order,
                                                           customer_a, customer_b):
        make_order(customer_a, 3)
        chip = stock_chip(customer_id=customer_b.id)

        with pytest.raises(SecurityViolationError) as exc:
            _activate(customer_a, tag_read(chip))
        assert exc.value.reason_code == UNKNOWN_UID
        assert chip.customer_id == customer_b.id

    def test_malformed_block_is_a_validation_error(self, stock_chip, tag_read, make_order,
                                                   customer_a, db_session):
        make_order(customer_a, 3)
        chip = stock_chip()

        with pytest.raises(ValidationError):
            _activate(customer_a, tag_read(chip), block8_data="XYZ")
        with pytest.raises(ValidationError):
            _activate(customer_a, tag_read(chip), chip_id=None)

        assert chip.status == ChipStatus.EN_STOCK
        assert _rejections(db_session) == []


class TestActivationRules:

    def test_chip_must_be_in_stock(self, delivered_chip, tag_read, make_order, customer_a):
        make_order(customer_a, 3)
        chip = delivered_chip(customer_a)

        with pytest.raises(InvalidTransitionError) as exc:
            _activate(customer_a, tag_read(chip))
        assert exc.value.current_status == ChipStatus.LIVREE

    def test_encoding_is_required(self, transit_chip, make_order, customer_a):
        make_order(customer_a, 3)
        chip = transit_chip()
        lifecycle_service.apply_transition(chip.id, ChipAction.RECEIVE_FROM_SUPPLIER)

        with pytest.raises(InvalidTransitionError):
            activation_service.activate_chip(
                customer_a.id, chip.uid, chip.id, "00" * 16, "00" * 16
            )

    def test_inactive_subscription(self, stock_chip, tag_read, make_order, customer_a, db_session):
        make_order(customer_a, 3)
        chip = stock_chip()
        customer_a.is_active = False
        db_session.commit()

        with pytest.raises(BusinessRuleError):
            _activate(customer_a, tag_read(chip))
        assert chip.status == ChipStatus.EN_STOCK

    def test_chip_limit(self, stock_chip, tag_read, make_order, customer_a, db_session):
        customer_a.chip_limit = 1
        db_session.commit()
        make_order(customer_a, 5)

        _activate(customer_a, tag_read(stock_chip()))
        assert activation_service.count_quota_chips(customer_a.id) == 1

        second = stock_chip()
        with pytest.raises(BusinessRuleError):
            _activate(customer_a, tag_read(second))
        assert second.status == ChipStatus.EN_STOCK

    def test_default_chip_limit_applies(self, app, customer_a):
        assert customer_a.chip_limit is None
        assert activation_service.chip_limit_for(customer_a) == app.config["DEFAULT_CHIP_LIMIT"]

    def test_no_delivered_order(self, stock_chip, tag_read, customer_a, db_session):
        chip = stock_chip()
        with pytest.raises(BusinessRuleError):
            _activate(customer_a, tag_read(chip))
        assert db_session.query(Order).count() == 0
        assert chip.status == ChipStatus.EN_STOCK


class TestValidateScan:

    def test_active_chip_is_valid(self, active_chip, customer_a, control_point_a, db_session):
        chip = active_chip(customer_a, control_point_a)
        result = activation_service.validate_scan(customer_a.id, chip.uid)
        assert result["valid"] is True
        assert result["control_point_id"] == control_point_a.id
        assert _scan_rejections(db_session) == []

    def test_foreign_chip_is_not_registered(self, active_chip, customer_a, customer_b, control_point_a, db_session):
        chip = active_chip(customer_a, control_point_a)
        result = activation_service.validate_scan(customer_b.id, chip.uid)
        assert result["valid"] is False
        assert "chip" not in result

        [event] = _scan_rejections(db_session)
        assert event.reason == UNKNOWN_UID
        assert event.customer_id == customer_b.id

    def test_unknown_uid_is_a_security_event(self, customer_a, db_session):
        result = activation_service.validate_scan(customer_a.id, "04:ff:ff:ff:ff:ff:ff")
        assert result == {"valid": False, "reason": "Chip not registered for this customer"}

        [event] = _scan_rejections(db_session)
        assert event.reason == UNKNOWN_UID
        assert event.severity == SEVERITY_CRITICAL
        assert event.success is False
        assert event.uid == "04FFFFFFFFFFFF"

    def test_non_active_chip(self, delivered_chip, customer_a, db_session):
        chip = delivered_chip(customer_a)
        result = activation_service.validate_scan(customer_a.id, chip.uid)
        assert result["valid"] is False
        assert result["chip"]["status"] == "LIVREE"
        assert _scan_rejections(db_session) == []

    def test_tampered_checksum(self, active_chip, customer_a, control_point_a, db_session):
        chip = active_chip(customer_a, control_point_a)
        chip.checksum = "00" * 16
        db_session.commit()
        result = activation_service.validate_scan(customer_a.id, chip.uid)
        assert result["valid"] is False
        assert result["reason"] == "Chip data failed validation"
        assert chip.status == ChipStatus.ACTIVE

        [event] = _scan_rejections(db_session)
        assert event.reason == CHECKSUM_MISMATCH
        assert event.severity == SEVERITY_CRITICAL
        assert event.chip_id == chip.chip_id
