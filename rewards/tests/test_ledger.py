"""
Unit Tests for the Ledger Service

Tests cover:
1. Attempt credit flow
2. Repeated attempts (no idempotency)
3. Payout flow
4. Balance consistency with the ledger
5. Activity history
"""

import threading

import pytest
from decimal import Decimal
from uuid import uuid4

from rewards.models import EntryKind
from rewards.service import (
    InsufficientBalanceError,
    LedgerService,
    SurveyNotFoundError,
    UserNotFoundError,
    to_money,
)


def assert_consistent(ledger, user_id):
    balance = ledger.get_balance(user_id)
    assert balance.current_balance == balance.ledger_balance
    assert balance.current_balance >= Decimal("0.00")


class TestAttemptFlow:
    """Tests for crediting survey attempts."""

    def test_attempt_credits_half_reward(self, ledger, storage, user, game_survey):
        """Test a 1.10 survey credits exactly 0.55."""
        credited = ledger.record_attempt(user.id, game_survey.id)

        assert credited == Decimal("0.55")
        assert storage.get_user(user.id).balance == Decimal("0.55")

        entries = storage.list_entries(user.id)
        assert len(entries) == 1
        assert entries[0].kind == EntryKind.ATTEMPTED
        assert entries[0].amount == Decimal("0.55")
        assert entries[0].survey_id == game_survey.id
        assert_consistent(ledger, user.id)

    def test_attempt_accepts_string_survey_id(self, ledger, user, game_survey):
        """Test survey ids coming from request bodies as strings."""
        assert ledger.record_attempt(user.id, str(game_survey.id)) == Decimal("0.55")

    def test_credit_rounds_half_up(self, ledger, user, make_survey):
        """Test half a cent rounds away from zero, not truncated."""
        survey = make_survey("0.75")

        # 0.375 -> 0.38
        assert ledger.record_attempt(user.id, survey.id) == Decimal("0.38")

    def test_repeated_attempts_credit_twice(self, ledger, storage, user, game_survey):
        """Test the same survey attempted twice is credited twice."""
        ledger.record_attempt(user.id, game_survey.id)
        ledger.record_attempt(user.id, game_survey.id)

        assert storage.get_user(user.id).balance == Decimal("1.10")
        assert len(storage.list_entries(user.id)) == 2
        assert_consistent(ledger, user.id)

    def test_unknown_survey_fails_without_mutation(self, ledger, storage, user):
        """Test that an unknown survey id is rejected."""
        with pytest.raises(SurveyNotFoundError):
            ledger.record_attempt(user.id, uuid4())

        with pytest.raises(SurveyNotFoundError):
            ledger.record_attempt(user.id, "not-a-survey-id")

        assert storage.list_entries(user.id) == []
        assert storage.get_user(user.id).balance == Decimal("0.00")

    def test_inactive_survey_fails(self, ledger, storage, user, make_survey):
        """Test that inactive surveys cannot be attempted."""
        survey = make_survey("2.00", active=False)

        with pytest.raises(SurveyNotFoundError):
            ledger.record_attempt(user.id, survey.id)

        assert storage.list_entries(user.id) == []

    def test_unknown_user_fails(self, ledger, game_survey):
        """Test attempts for a missing user are rejected."""
        with pytest.raises(UserNotFoundError):
            ledger.record_attempt(uuid4(), game_survey.id)

    def test_custom_credit_ratio(self, storage, catalog, user, game_survey):
        """Test the credit fraction is configurable."""
        ledger = LedgerService(storage, catalog=catalog, credit_ratio=Decimal("1"))

        assert ledger.record_attempt(user.id, game_survey.id) == Decimal("1.10")


class TestPayoutFlow:
    """Tests for the payout flow."""

    def test_payout_below_minimum_fails(self, ledger, storage, user, make_survey):
        """Test a 0.50 balance cannot be paid out."""
        survey = make_survey("1.00")
        ledger.record_attempt(user.id, survey.id)
        assert storage.get_user(user.id).balance == Decimal("0.50")

        with pytest.raises(InsufficientBalanceError):
            ledger.request_payout(user.id)

        # Nothing changed
        assert storage.get_user(user.id).balance == Decimal("0.50")
        assert len(storage.list_entries(user.id)) == 1

    def test_payout_drains_balance(self, ledger, storage, user, make_survey):
        """Test a 2.30 balance pays out in full."""
        survey = make_survey("4.60")
        ledger.record_attempt(user.id, survey.id)

        result = ledger.request_payout(user.id)

        assert result.amount == Decimal("2.30")
        assert result.message == "Payout requested for $2.30 (demo)"
        assert storage.get_user(user.id).balance == Decimal("0.00")

        payout = storage.list_entries(user.id)[-1]
        assert payout.kind == EntryKind.PAYOUT
        assert payout.amount == Decimal("-2.30")
        assert payout.survey_id is None
        assert_consistent(ledger, user.id)

    def test_payout_at_exact_minimum(self, ledger, storage, user, make_survey):
        """Test a balance of exactly 1.00 is allowed."""
        ledger.record_attempt(user.id, make_survey("2.00").id)

        assert ledger.request_payout(user.id).amount == Decimal("1.00")
        assert storage.get_user(user.id).balance == Decimal("0.00")

    def test_second_payout_fails(self, ledger, user, make_survey):
        """Test that a drained balance cannot be paid out again."""
        ledger.record_attempt(user.id, make_survey("3.00").id)
        ledger.request_payout(user.id)

        with pytest.raises(InsufficientBalanceError):
            ledger.request_payout(user.id)

    def test_payout_unknown_user_fails(self, ledger):
        with pytest.raises(UserNotFoundError):
            ledger.request_payout(uuid4())


class TestBalanceCalculation:
    """Tests for balance consistency."""

    def test_balance_matches_ledger_sum(self, ledger, storage, user, catalog):
        """Test the cached balance tracks the ledger through mixed operations."""
        surveys = catalog.list_active()
        for survey in surveys * 3:
            ledger.record_attempt(user.id, survey.id)
            assert_consistent(ledger, user.id)

        ledger.request_payout(user.id)
        assert_consistent(ledger, user.id)

        ledger.record_attempt(user.id, surveys[0].id)
        balance = ledger.get_balance(user.id)

        # 3 rounds of 4 surveys, 1 payout, 1 more attempt
        assert balance.total_entries == 14
        assert balance.current_balance == ledger.credit_for(surveys[0])
        assert balance.is_consistent

    def test_balances_are_per_user(self, ledger, identity, storage, user, game_survey):
        """Test that one user's activity does not touch another's balance."""
        other = identity.register("Bob", "bob@example.com", "hunter22")
        ledger.record_attempt(user.id, game_survey.id)

        assert storage.get_user(other.id).balance == Decimal("0.00")
        assert ledger.get_balance(other.id).total_entries == 0

    def test_to_money(self):
        assert to_money(Decimal("0.005")) == Decimal("0.01")
        assert to_money(Decimal("0.004")) == Decimal("0.00")
        assert to_money(Decimal("1")) == Decimal("1.00")


class TestActivity:
    """Tests for activity history."""

    def test_activity_is_truncated_newest_first(self, ledger, storage, user, catalog):
        """Test 30 attempts list as the 25 most recent."""
        surveys = catalog.list_active()
        for i in range(30):
            ledger.record_attempt(user.id, surveys[i % len(surveys)].id)

        activity = ledger.list_activity(user.id)
        entries = storage.list_entries(user.id)

        assert len(activity) == 25
        assert [a.id for a in activity] == [e.id for e in reversed(entries)][:25]

    def test_activity_labels(self, ledger, user, make_survey):
        """Test the display projection of attempts and payouts."""
        ledger.record_attempt(user.id, make_survey("3.00").id)
        ledger.request_payout(user.id)

        payout, attempt = ledger.list_activity(user.id)

        assert payout.type == "Payout"
        assert payout.amount == Decimal("-1.50")
        assert payout.note == "Manual payout request"
        assert attempt.type == "Survey attempt"
        assert attempt.amount == Decimal("1.50")
        assert attempt.note is None

    def test_activity_custom_limit(self, ledger, user, game_survey):
        for _ in range(5):
            ledger.record_attempt(user.id, game_survey.id)

        assert len(ledger.list_activity(user.id, limit=2)) == 2
        assert ledger.list_activity(user.id, limit=0) == []

    def test_activity_empty_for_new_user(self, ledger, user):
        assert ledger.list_activity(user.id) == []


class TestConcurrency:
    """Tests for serialized ledger mutations."""

    def test_threads_mixing_attempts_and_payouts(self, ledger, storage, user, catalog):
        """Test concurrent credits and payouts keep balance equal to the ledger."""
        surveys = catalog.list_active()
        payouts = []
        errors = []
        start = threading.Barrier(8)

        def worker(n):
            try:
                start.wait()
                for i in range(50):
                    ledger.record_attempt(user.id, surveys[(n + i) % len(surveys)].id)
                    if i % 10 == 9:
                        try:
                            payouts.append(ledger.request_payout(user.id).amount)
                        except InsufficientBalanceError:
                            pass
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        balance = ledger.get_balance(user.id)
        assert balance.is_consistent
        assert balance.current_balance >= Decimal("0.00")
        assert balance.total_entries == 8 * 50 + len(payouts)
        assert all(p >= Decimal("1.00") for p in payouts)

        # Every payout drained exactly what had been credited before it
        credited = sum(
            (e.amount for e in storage.list_entries(user.id) if e.kind == EntryKind.ATTEMPTED),
            Decimal("0.00"),
        )
        assert credited - sum(payouts, Decimal("0.00")) == balance.current_balance

    def test_attempt_does_not_load_history(self, ledger, storage, user, game_survey, monkeypatch):
        """Test a credit is written without reading the user's whole ledger."""
        def fail(user_id):
            raise AssertionError("ledger history loaded during a credit")

        monkeypatch.setattr(storage, "list_entries", fail)

        assert ledger.record_attempt(user.id, game_survey.id) == Decimal("0.55")
        assert storage.get_user(user.id).balance == Decimal("0.55")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
