"""
Unit Tests for the Transaction Store and Balance Mutator

Tests cover:
1. Creation rules and reference codes
2. State transitions
3. Exactly-once balance effects
4. Idempotency keys
5. Queries, aggregates and reconciliation
"""

import re
from decimal import Decimal
from uuid import uuid4

import pytest

from sunledger.balance import BalanceMutator
from sunledger.errors import (
    IdempotencyViolation,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from sunledger.models import (
    MobileWalletDetails,
    PaymentMethod,
    SystemDetails,
    TransactionStatus,
    TransactionType,
)
from sunledger.storage import DuplicateReferenceError

from conftest import assert_consistent, fund, register


def pending(service, user_id, type=TransactionType.DEPOSIT, amount="1000", **kwargs):
    if type == TransactionType.WITHDRAWAL:
        kwargs.setdefault("net_amount", Decimal(amount) * Decimal("0.98"))
    return service.transactions.create(
        user_id=user_id,
        type=type,
        amount=Decimal(amount),
        payment_method=PaymentMethod.BKASH,
        payment_details=MobileWalletDetails(channel="bkash"),
        description="Test transaction",
        **kwargs,
    )


class TestCreate:
    """Tests for recording new transactions."""

    def test_create_starts_pending(self, service, user):
        """Test that a user-initiated transaction starts pending with no balance effect."""
        txn = pending(service, user.id)

        assert txn.status == TransactionStatus.PENDING
        assert service.get_user(user.id).balance == Decimal("0.00")

    def test_reference_format(self, service, user):
        """Test the TXN + 8 timestamp digits + 4 random digits format."""
        txn = pending(service, user.id)

        assert re.fullmatch(r"TXN\d{8}\d{4}", txn.reference)

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_non_positive_amount_rejected(self, service, user, amount):
        """Test that amounts must be strictly positive."""
        with pytest.raises(ValidationError):
            pending(service, user.id, amount=amount)

    def test_withdrawal_requires_net_amount(self, service, user):
        """Test that a withdrawal without a net amount is refused."""
        with pytest.raises(ValidationError):
            pending(service, user.id, type=TransactionType.WITHDRAWAL, net_amount=None)

    def test_channel_must_match_method(self, service, user):
        """Test that payment details must belong to the chosen method."""
        with pytest.raises(ValidationError):
            service.transactions.create(
                user_id=user.id,
                type=TransactionType.DEPOSIT,
                amount=Decimal("100"),
                payment_method=PaymentMethod.NAGAD,
                payment_details=MobileWalletDetails(channel="bkash"),
                description="Mismatch",
            )

    def test_unknown_user(self, service):
        """Test that a transaction for an unknown user is refused."""
        with pytest.raises(NotFoundError):
            pending(service, uuid4())

    def test_user_initiated_types_cannot_start_completed(self, service, user):
        """Test that deposits cannot be inserted already completed."""
        with pytest.raises(ValidationError):
            pending(service, user.id, completed=True)

    def test_reference_collision_is_retried(self, service, user, monkeypatch):
        """Test that a colliding reference is regenerated."""
        first = pending(service, user.id)
        references = iter([first.reference, "TXN123456789999"])
        monkeypatch.setattr(service.transactions, "new_reference", lambda: next(references))

        second = pending(service, user.id)

        assert second.reference == "TXN123456789999"

    def test_reference_retries_are_bounded(self, service, user, monkeypatch):
        """Test that creation gives up once every attempt collides."""
        first = pending(service, user.id)
        monkeypatch.setattr(service.transactions, "new_reference", lambda: first.reference)

        with pytest.raises(ValidationError, match="unique transaction reference"):
            pending(service, user.id)

        assert len(service.storage.user_transactions(user.id)) == 1

    def test_references_ignore_the_business_clock(self, service, user):
        """Test that a frozen clock still yields distinct references."""
        references = {pending(service, user.id).reference for _ in range(200)}

        assert len(references) == 200

    def test_reference_uniqueness_enforced_by_store(self, service, user):
        """Test that the store refuses a duplicate reference."""
        txn = pending(service, user.id)
        clone = txn.model_copy(update={"id": uuid4()})

        with pytest.raises(DuplicateReferenceError):
            service.storage.insert_transaction(clone)

    def test_amount_is_immutable(self, service, user):
        """Test that amount cannot be reassigned once created."""
        txn = pending(service, user.id)

        with pytest.raises(Exception):
            txn.amount = Decimal("5")


class TestTransitions:
    """Tests for the transaction state machine."""

    def test_complete_applies_balance_once(self, service, user):
        """Test that completion credits the balance exactly once."""
        txn = pending(service, user.id, amount="2000")

        service.transactions.transition(txn.id, TransactionStatus.COMPLETED)

        refreshed = service.get_user(user.id)
        assert refreshed.balance == Decimal("2000")
        assert refreshed.total_deposit == Decimal("2000")
        assert_consistent(service, user.id)

    def test_second_completion_rejected(self, service, user):
        """Test that completing the same transaction twice is refused and the balance is unchanged."""
        txn = pending(service, user.id, amount="2000")
        service.transactions.transition(txn.id, TransactionStatus.COMPLETED)

        with pytest.raises(IdempotencyViolation):
            service.transactions.transition(txn.id, TransactionStatus.COMPLETED)

        assert service.get_user(user.id).balance == Decimal("2000")
        assert_consistent(service, user.id)

    @pytest.mark.parametrize("terminal", [
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
        TransactionStatus.REJECTED,
    ])
    def test_terminal_states_are_final(self, service, user, terminal):
        """Test that nothing leaves a terminal state."""
        txn = pending(service, user.id)
        service.transactions.transition(txn.id, terminal)

        with pytest.raises(InvalidTransitionError):
            service.transactions.transition(txn.id, TransactionStatus.COMPLETED)
        assert service.get_user(user.id).balance == Decimal("0.00")

    def test_processing_cannot_be_cancelled(self, service, user):
        """Test that processing only leads to completed or failed."""
        txn = pending(service, user.id)
        service.transactions.transition(txn.id, TransactionStatus.PROCESSING)

        with pytest.raises(InvalidTransitionError):
            service.transactions.transition(txn.id, TransactionStatus.CANCELLED)

    def test_cannot_return_to_pending(self, service, user):
        """Test that pending is not reachable again."""
        txn = pending(service, user.id)
        service.transactions.transition(txn.id, TransactionStatus.PROCESSING)

        with pytest.raises(InvalidTransitionError):
            service.transactions.transition(txn.id, TransactionStatus.PENDING)

    def test_failed_debit_commits_nothing(self, service, user):
        """Test that an unaffordable debit leaves status and balance untouched."""
        fund(service, user.id, "300")
        txn = pending(service, user.id, type=TransactionType.WITHDRAWAL, amount="500")

        with pytest.raises(ValidationError):
            service.transactions.transition(txn.id, TransactionStatus.COMPLETED)

        assert service.get_transaction(txn.id).status == TransactionStatus.PENDING
        assert service.get_user(user.id).balance == Decimal("300")
        assert_consistent(service, user.id)

    def test_processing_metadata_recorded(self, service, user):
        """Test that actor, notes and processed time are stored."""
        admin = uuid4()
        txn = pending(service, user.id)

        done = service.transactions.transition(txn.id, TransactionStatus.REJECTED, actor=admin, notes="Bad proof")

        assert done.processed_by == admin
        assert done.notes == "Bad proof"
        assert done.processed_at is not None


class TestBalanceMutator:
    """Tests for the per-type balance effects."""

    @pytest.mark.parametrize("type,delta,counter", [
        (TransactionType.PROFIT, Decimal("100"), "total_profit"),
        (TransactionType.COMMISSION, Decimal("100"), "total_profit"),
        (TransactionType.BONUS, Decimal("100"), "total_profit"),
        (TransactionType.INVESTMENT, Decimal("-100"), "total_investment"),
    ])
    def test_system_types(self, service, user, type, delta, counter):
        """Test the balance and counter change for system-generated types."""
        fund(service, user.id, "500")
        before = service.get_user(user.id)

        service.transactions.create(
            user_id=user.id,
            type=type,
            amount=Decimal("100"),
            payment_method=PaymentMethod.SYSTEM,
            payment_details=SystemDetails(),
            description="System",
            completed=True,
        )

        after = service.get_user(user.id)
        assert after.balance == before.balance + delta
        assert getattr(after, counter) == getattr(before, counter) + Decimal("100")

    def test_refund_has_no_effect(self, service, user):
        """Test that completing a refund leaves the balance alone."""
        txn = pending(service, user.id, type=TransactionType.REFUND)

        service.transactions.transition(txn.id, TransactionStatus.COMPLETED)

        assert service.get_user(user.id).balance == Decimal("0.00")
        assert_consistent(service, user.id)

    def test_reapplying_is_rejected(self, service, user):
        """Test that the mutator refuses a transaction it already applied."""
        txn = pending(service, user.id)
        done = service.transactions.transition(txn.id, TransactionStatus.COMPLETED)

        with pytest.raises(IdempotencyViolation):
            BalanceMutator(service.storage).apply(service.get_user(user.id), done)

    def test_mutator_never_goes_negative(self, service, user):
        """Test that a debit larger than the balance is refused."""
        txn = pending(service, user.id, type=TransactionType.WITHDRAWAL, amount="500")
        completed = txn.model_copy(update={"status": TransactionStatus.COMPLETED})

        with pytest.raises(ValidationError):
            BalanceMutator(service.storage).apply(service.get_user(user.id), completed)


class TestIdempotencyKeys:
    """Tests for caller-supplied idempotency keys."""

    def test_same_key_same_request_returns_existing(self, service, user):
        """Test that re-delivery of the same request returns the original."""
        first = pending(service, user.id, idempotency_key="dep-001")
        second = pending(service, user.id, idempotency_key="dep-001")

        assert second.id == first.id
        assert service.list_transactions(user.id).total == 1

    def test_same_key_different_request_rejected(self, service, user):
        """Test that a key cannot be reused for a different request."""
        pending(service, user.id, idempotency_key="dep-002")

        with pytest.raises(IdempotencyViolation):
            pending(service, user.id, amount="999", idempotency_key="dep-002")


class TestQueries:
    """Tests for read-only queries."""

    def test_list_filters_and_pagination(self, service, user, clock):
        """Test filtering by type and newest-first pagination."""
        for _ in range(3):
            pending(service, user.id)
            clock.advance(hours=1)
        pending(service, user.id, type=TransactionType.WITHDRAWAL)

        page = service.list_transactions(user.id, type=TransactionType.DEPOSIT, page=1, limit=2)

        assert page.total == 3
        assert page.pages == 2
        assert len(page.items) == 2
        assert page.items[0].created_at > page.items[1].created_at

    def test_list_pending_oldest_first(self, service, user, clock):
        """Test the admin pending queue order."""
        first = pending(service, user.id)
        clock.advance(hours=1)
        second = pending(service, user.id)

        queue = service.list_pending(TransactionType.DEPOSIT)

        assert [t.id for t in queue] == [first.id, second.id]

    def test_queries_have_no_side_effects(self, service, user):
        """Test that querying does not change balances or statuses."""
        txn = pending(service, user.id)

        service.list_transactions(user.id)
        service.totals_by_type(user.id)
        service.reconcile_user(user.id)

        assert service.get_transaction(txn.id).status == TransactionStatus.PENDING
        assert service.get_user(user.id).balance == Decimal("0.00")

    def test_totals_by_type(self, service, user):
        """Test aggregate sums over completed transactions."""
        fund(service, user.id, "700")
        pending(service, user.id)

        totals = service.totals_by_type(user.id)

        assert totals[TransactionType.BONUS] == Decimal("700")
        assert totals[TransactionType.DEPOSIT] == Decimal("0.00")

    def test_reconciliation_detects_drift(self, service, user):
        """Test that a balance edited outside the ledger is reported."""
        fund(service, user.id, "700")
        tampered = service.get_user(user.id)
        tampered.balance = Decimal("900")
        service.storage.put_user(tampered)

        reconciliation = service.reconcile_user(user.id)

        assert not reconciliation.consistent
        assert reconciliation.computed_balance == Decimal("700")

    def test_other_users_unaffected(self, service, user):
        """Test that one user's transactions never touch another's balance."""
        other = register(service, "Karim Ahmed")
        txn = pending(service, user.id)
        service.transactions.transition(txn.id, TransactionStatus.COMPLETED)

        assert service.get_user(other.id).balance == Decimal("0.00")
