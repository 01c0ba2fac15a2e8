"""Tests for durable order records and resolution claims."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from binsettle.models.trade_models import Direction, FailureReason, Order, OrderState, Outcome

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_order(order_id="o1", user_id="u", duration=60, created_at=T0, **kw):
    return Order(
        id=order_id,
        user_id=user_id,
        symbol_id="BTC",
        amount=Decimal("50"),
        direction=Direction.UP,
        entry_price=Decimal("42000.50"),
        payout_rate=Decimal("80"),
        created_at=created_at,
        duration_seconds=duration,
        expires_at=created_at + timedelta(seconds=duration),
        **kw,
    )


def insert(repo, orders, order):
    with repo.transaction() as cur:
        orders.create(cur, order)


class TestOrderStore:
    def test_create_and_get(self, repo, orders):
        insert(repo, orders, make_order(client_entry_price=Decimal("41999")))
        got = orders.get("o1")
        assert got is not None
        assert got.state is OrderState.PENDING
        assert got.entry_price == Decimal("42000.50")
        assert got.expires_at == T0 + timedelta(seconds=60)
        assert got.client_entry_price == Decimal("41999")
        assert orders.get("missing") is None

    def test_update_resolved_applies_once(self, repo, orders):
        insert(repo, orders, make_order())
        with repo.transaction() as cur:
            first = orders.update_resolved(
                cur, "o1", exit_price=Decimal("42001"), outcome=Outcome.WIN,
                profit_loss=Decimal("40"), resolved_at=T0 + timedelta(seconds=61),
            )
        with repo.transaction() as cur:
            second = orders.update_resolved(
                cur, "o1", exit_price=Decimal("1"), outcome=Outcome.LOSS,
                profit_loss=Decimal("-50"), resolved_at=T0 + timedelta(seconds=62),
            )
        assert first is True
        assert second is False
        got = orders.get("o1")
        assert got.state is OrderState.RESOLVED
        assert got.outcome is Outcome.WIN
        assert got.exit_price == Decimal("42001")

    def test_mark_failed_only_from_pending(self, repo, orders):
        insert(repo, orders, make_order())
        with repo.transaction() as cur:
            assert orders.mark_failed(
                cur, "o1", reason=FailureReason.PRICE_UNAVAILABLE, resolved_at=T0, refunded=True
            )
        with repo.transaction() as cur:
            assert not orders.update_resolved(
                cur, "o1", exit_price=Decimal("1"), outcome=Outcome.WIN,
                profit_loss=Decimal("1"), resolved_at=T0,
            )
        got = orders.get("o1")
        assert got.state is OrderState.FAILED
        assert got.failure_reason is FailureReason.PRICE_UNAVAILABLE
        assert got.refunded is True

    def test_find_due_pending(self, repo, orders):
        insert(repo, orders, make_order("late", duration=120))
        insert(repo, orders, make_order("early", duration=30))
        insert(repo, orders, make_order("done", duration=10))
        with repo.transaction() as cur:
            orders.mark_failed(cur, "done", reason=FailureReason.PRICE_UNAVAILABLE, resolved_at=T0)

        assert orders.find_due_pending(T0 + timedelta(seconds=29)) == []
        # expiry exactly at now counts as due
        due = orders.find_due_pending(T0 + timedelta(seconds=30))
        assert [o.id for o in due] == ["early"]
        due = orders.find_due_pending(T0 + timedelta(hours=1))
        assert [o.id for o in due] == ["early", "late"]
        assert [o.id for o in orders.list_pending()] == ["early", "late"]

    def test_list_for_user_and_counts(self, repo, orders):
        insert(repo, orders, make_order("a", user_id="u1"))
        insert(repo, orders, make_order("b", user_id="u1", created_at=T0 + timedelta(seconds=5)))
        insert(repo, orders, make_order("c", user_id="u2"))
        assert [o.id for o in orders.list_for_user("u1")] == ["b", "a"]
        assert orders.count_by_state() == {"PENDING": 3, "RESOLVED": 0, "FAILED": 0}


class TestClaims:
    def test_live_lease_excludes_other_owners(self, repo, orders):
        insert(repo, orders, make_order())
        assert orders.try_claim("o1", "worker-a", now=T0, lease_sec=30)
        assert not orders.try_claim("o1", "worker-b", now=T0 + timedelta(seconds=10), lease_sec=30)
        # the holder may renew
        assert orders.try_claim("o1", "worker-a", now=T0 + timedelta(seconds=10), lease_sec=30)

    def test_expired_lease_can_be_taken_over(self, repo, orders):
        insert(repo, orders, make_order())
        assert orders.try_claim("o1", "worker-a", now=T0, lease_sec=30)
        assert orders.try_claim("o1", "worker-b", now=T0 + timedelta(seconds=31), lease_sec=30)

    def test_release_and_terminal_orders(self, repo, orders):
        insert(repo, orders, make_order())
        assert orders.try_claim("o1", "worker-a", now=T0, lease_sec=30)
        orders.release_claim("o1", "worker-a")
        assert orders.try_claim("o1", "worker-b", now=T0, lease_sec=30)
        with repo.transaction() as cur:
            orders.mark_failed(cur, "o1", reason=FailureReason.PRICE_UNAVAILABLE, resolved_at=T0)
        assert not orders.try_claim("o1", "worker-b", now=T0, lease_sec=30)
