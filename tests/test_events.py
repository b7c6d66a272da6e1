"""
Tests for policy manager log decoding.
"""
from __future__ import annotations

from web3 import Web3

from autopay_relayer.chain.events import (
    ChargeFailedEvent,
    ChargeSucceededEvent,
    PolicyCancelledByFailureEvent,
    PolicyCreatedEvent,
    PolicyRevokedEvent,
    event_topics,
    parse_log,
    topic_for,
)

from chain_fakes import (
    MERCHANT,
    PAYER,
    charge_failed_log,
    charge_succeeded_log,
    policy_cancelled_log,
    policy_created_log,
    policy_id,
    policy_revoked_log,
)


class TestTopics:
    """Tests for event signatures."""

    def test_topics_match_keccak_of_signature(self):
        """topic0 should be keccak256 of the canonical event signature."""
        expected = Web3.to_hex(
            Web3.keccak(text="PolicyCreated(bytes32,address,address,uint128,uint32,uint128,string)")
        )
        assert topic_for("PolicyCreated") == expected

    def test_all_five_events_subscribed(self):
        assert len(event_topics()) == 5
        assert len(set(event_topics())) == 5


class TestParseLog:
    """Tests for parse_log."""

    def test_policy_created(self):
        """Should decode indexed and data fields of PolicyCreated."""
        pid = policy_id(7)
        event = parse_log(policy_created_log(pid, 105, charge_amount=9_990_000, interval=2_592_000,
                                             spending_cap=119_880_000, metadata_url="https://m.example/plan"))

        assert isinstance(event, PolicyCreatedEvent)
        assert event.policy_id == pid
        assert event.payer == PAYER
        assert event.merchant == MERCHANT
        assert event.charge_amount == 9_990_000
        assert event.interval == 2_592_000
        assert event.spending_cap == 119_880_000
        assert event.metadata_url == "https://m.example/plan"
        assert event.block_number == 105
        assert event.tx_hash.startswith("0x")

    def test_other_events(self):
        """Should decode each remaining event kind."""
        pid = policy_id(8)

        revoked = parse_log(policy_revoked_log(pid, 1, end_time=1_767_225_600))
        assert isinstance(revoked, PolicyRevokedEvent)
        assert revoked.end_time == 1_767_225_600

        succeeded = parse_log(charge_succeeded_log(pid, 2, amount=5, protocol_fee=1, log_index=3))
        assert isinstance(succeeded, ChargeSucceededEvent)
        assert (succeeded.amount, succeeded.protocol_fee, succeeded.log_index) == (5, 1, 3)

        failed = parse_log(charge_failed_log(pid, 3, "InsufficientBalance"))
        assert isinstance(failed, ChargeFailedEvent)
        assert failed.reason == "InsufficientBalance"

        cancelled = parse_log(policy_cancelled_log(pid, 4, consecutive_failures=3, end_time=9))
        assert isinstance(cancelled, PolicyCancelledByFailureEvent)
        assert cancelled.consecutive_failures == 3

    def test_addresses_are_lowercased(self):
        """Checksummed topics should still decode to lowercase addresses."""
        event = parse_log(policy_created_log(policy_id(1), 1, merchant=Web3.to_checksum_address(MERCHANT)))
        assert event.merchant == MERCHANT

    def test_unknown_topic_returns_none(self):
        log = policy_created_log(policy_id(1), 1)
        log["topics"] = ["0x" + "ff" * 32] + log["topics"][1:]
        assert parse_log(log) is None

    def test_bad_data_returns_none(self):
        log = charge_succeeded_log(policy_id(1), 1)
        log["data"] = "0xdeadbeef"
        assert parse_log(log) is None

    def test_wrong_topic_count_returns_none(self):
        log = policy_revoked_log(policy_id(1), 1)
        log["topics"] = log["topics"][:2]
        assert parse_log(log) is None

    def test_empty_log_returns_none(self):
        assert parse_log({}) is None
