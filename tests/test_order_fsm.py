from __future__ import annotations

import itertools
import logging

import pytest
from sqlalchemy.exc import OperationalError

from settlement import (
    SettlementRepository,
    build_session_factory,
    init_settlement_db,
    session_scope,
)
from settlement.models import OrderStatus
from settlement.order_fsm import (
    ADVANCED_STATUSES,
    HELD_STATUSES,
    PAYMENT_TRANSITIONS,
    OrderTransitionGuard,
    is_payment_transition_allowed,
)


def make_db():
    engine, session_factory = build_session_factory("sqlite+pysqlite:///:memory:")
    init_settlement_db(engine)
    return engine, session_factory


def _seed(session_factory, order_id: str, status: OrderStatus) -> None:
    with session_scope(session_factory) as session:
        SettlementRepository(session).create_order(order_id, "farmer-1", total_amount_centavos=25000, status=status)


def test_paid_event_moves_to_pay_order_to_ship() -> None:
    engine, session_factory = make_db()
    _seed(session_factory, "ORD-1", OrderStatus.TO_PAY)

    with session_scope(session_factory) as session:
        repo = SettlementRepository(session)
        result = OrderTransitionGuard(repo).transition("ORD-1", OrderStatus.TO_SHIP, payment_reference="pay_1")
        assert result.success is True
        assert result.outcome == "applied"
        assert result.previous_status == OrderStatus.TO_PAY
        assert result.status == OrderStatus.TO_SHIP

    with session_scope(session_factory) as session:
        order = SettlementRepository(session).get_order("ORD-1")
        assert order is not None
        assert order.status == OrderStatus.TO_SHIP
        assert order.payment_reference == "pay_1"

    engine.dispose()


def test_failed_payment_can_be_retried_to_success() -> None:
    engine, session_factory = make_db()
    _seed(session_factory, "ORD-2", OrderStatus.TO_PAY)

    with session_scope(session_factory) as session:
        guard = OrderTransitionGuard(SettlementRepository(session))
        assert guard.transition("ORD-2", OrderStatus.PAYMENT_FAILED).outcome == "applied"
        assert guard.transition("ORD-2", OrderStatus.TO_SHIP).outcome == "applied"
        assert SettlementRepository(session).get_order_status("ORD-2") == OrderStatus.TO_SHIP

    engine.dispose()


@pytest.mark.parametrize("advanced", sorted(ADVANCED_STATUSES, key=lambda item: item.value))
def test_late_failure_never_regresses_advanced_order(advanced: OrderStatus) -> None:
    engine, session_factory = make_db()
    _seed(session_factory, "ORD-3", advanced)

    with session_scope(session_factory) as session:
        repo = SettlementRepository(session)
        result = OrderTransitionGuard(repo).transition("ORD-3", OrderStatus.PAYMENT_FAILED)
        assert result.success is True
        assert result.outcome == "stale"
        assert repo.get_order_status("ORD-3") == advanced

    engine.dispose()


def test_out_of_order_failure_after_paid_is_a_noop() -> None:
    engine, session_factory = make_db()
    _seed(session_factory, "ORD-4", OrderStatus.TO_PAY)

    with session_scope(session_factory) as session:
        repo = SettlementRepository(session)
        guard = OrderTransitionGuard(repo)
        assert guard.transition("ORD-4", OrderStatus.TO_SHIP).outcome == "applied"
        late = guard.transition("ORD-4", OrderStatus.PAYMENT_FAILED)
        assert late.success is True
        assert late.outcome == "stale"
        assert repo.get_order_status("ORD-4") == OrderStatus.TO_SHIP

    engine.dispose()


def test_repeated_transition_is_unchanged() -> None:
    engine, session_factory = make_db()
    _seed(session_factory, "ORD-5", OrderStatus.TO_PAY)

    with session_scope(session_factory) as session:
        repo = SettlementRepository(session)
        guard = OrderTransitionGuard(repo)
        first = guard.transition("ORD-5", OrderStatus.TO_SHIP)
        updated_at = repo.get_order("ORD-5").updated_at
        second = guard.transition("ORD-5", OrderStatus.TO_SHIP)
        assert first.outcome == "applied"
        assert second.success is True
        assert second.outcome == "unchanged"
        assert repo.get_order("ORD-5").updated_at == updated_at

    engine.dispose()


def test_unknown_order_reports_failure_without_creating_rows() -> None:
    engine, session_factory = make_db()

    with session_scope(session_factory) as session:
        repo = SettlementRepository(session)
        result = OrderTransitionGuard(repo).transition("ORD-missing", OrderStatus.TO_SHIP)
        assert result.success is False
        assert result.outcome == "not_found"
        assert result.error == "order not found: ORD-missing"
        assert repo.list_orders() == []

    engine.dispose()


def test_persistence_failure_is_reported_not_raised(monkeypatch) -> None:
    engine, session_factory = make_db()
    _seed(session_factory, "ORD-6", OrderStatus.TO_PAY)

    def _locked(*_args, **_kwargs):
        raise OperationalError("UPDATE settlement_orders", {}, Exception("database is locked"))

    with session_scope(session_factory) as session:
        repo = SettlementRepository(session)
        monkeypatch.setattr(repo, "compare_and_set_order_status", _locked)
        result = OrderTransitionGuard(repo).transition("ORD-6", OrderStatus.TO_SHIP)
        assert result.success is False
        assert result.outcome == "error"
        assert "database is locked" in str(result.error)

    engine.dispose()


def test_lost_compare_and_set_race_is_reevaluated(monkeypatch) -> None:
    engine, session_factory = make_db()
    _seed(session_factory, "ORD-7", OrderStatus.TO_PAY)

    with session_scope(session_factory) as session:
        repo = SettlementRepository(session)
        original = repo.compare_and_set_order_status
        calls = {"count": 0}

        def _racing(order_id, **kwargs):
            calls["count"] += 1
            if calls["count"] == 1:
                # Another delivery wins the race between read and write.
                original(order_id, expected=OrderStatus.TO_PAY, target=OrderStatus.TO_SHIP)
                return False
            return original(order_id, **kwargs)

        monkeypatch.setattr(repo, "compare_and_set_order_status", _racing)
        result = OrderTransitionGuard(repo).transition("ORD-7", OrderStatus.PAYMENT_FAILED)
        assert result.success is True
        assert result.outcome == "stale"
        assert repo.get_order_status("ORD-7") == OrderStatus.TO_SHIP

    engine.dispose()


def test_advanced_statuses_have_no_payment_edges() -> None:
    for current, target in itertools.product(ADVANCED_STATUSES, OrderStatus):
        assert is_payment_transition_allowed(current, target) is False


def test_every_status_is_covered_by_the_allow_list() -> None:
    assert set(PAYMENT_TRANSITIONS) == set(OrderStatus)
    for targets in PAYMENT_TRANSITIONS.values():
        assert targets <= {OrderStatus.TO_SHIP, OrderStatus.PAYMENT_FAILED}


def test_held_statuses_have_no_payment_edges() -> None:
    for current, target in itertools.product(HELD_STATUSES, OrderStatus):
        assert is_payment_transition_allowed(current, target) is False


@pytest.mark.parametrize("target", [OrderStatus.TO_SHIP, OrderStatus.PAYMENT_FAILED])
def test_refund_case_is_left_alone_by_payment_events(target: OrderStatus) -> None:
    engine, session_factory = make_db()
    _seed(session_factory, "ORD-RR", OrderStatus.RETURN_REFUND)

    with session_scope(session_factory) as session:
        repo = SettlementRepository(session)
        result = OrderTransitionGuard(repo).transition("ORD-RR", target)
        assert result.success is True
        assert result.outcome == "stale"
        assert repo.get_order_status("ORD-RR") == OrderStatus.RETURN_REFUND

    engine.dispose()


def test_late_payment_on_cancellation_request_keeps_request_and_warns(caplog) -> None:
    engine, session_factory = make_db()
    _seed(session_factory, "ORD-PC", OrderStatus.PENDING_CANCELLATION)

    with caplog.at_level(logging.WARNING, logger="geminiagri.settlement.order_fsm"):
        with session_scope(session_factory) as session:
            repo = SettlementRepository(session)
            guard = OrderTransitionGuard(repo)
            paid = guard.transition("ORD-PC", OrderStatus.TO_SHIP, payment_reference="pay_late")
            failed = guard.transition("ORD-PC", OrderStatus.PAYMENT_FAILED)
            assert paid.outcome == "stale"
            assert failed.outcome == "stale"
            assert repo.get_order_status("ORD-PC") == OrderStatus.PENDING_CANCELLATION

    warnings = [record.getMessage() for record in caplog.records if record.levelno == logging.WARNING]
    assert warnings == ["settlement.order.payment_on_held_order"]

    engine.dispose()
