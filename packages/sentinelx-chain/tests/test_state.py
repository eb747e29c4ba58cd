"""
Tests for sentinelx_chain.state.

Tests cover:
- Guardian set reads (dictionary and named-key layouts)
- Recovery request reconstruction, including per-guardian approvals
- Guardian pending lists excluding finalized recoveries
- Empty results for unknown accounts and failing nodes
- Thresholds kept within 2..guardian count on read-back
"""
from __future__ import annotations

import logging

import httpx
import pytest

from sentinelx_chain.clvalue import CL_U256, CLValue, list_of
from sentinelx_chain.state import StateReconstructor
from sentinelx_chain.storage_keys import DictionaryKeys, NamedKeys, RecoveryField, StorageLayout

pytestmark = [pytest.mark.asyncio]


@pytest.fixture
def reconstructor(gateway):
    return StateReconstructor(gateway)


@pytest.fixture
def registered(fake_node, owner, guardians):
    """Owner registered with three guardians and threshold 2."""
    account = owner.account_hash
    fake_node.put_item(DictionaryKeys.initialized(account), CLValue.bool(True))
    fake_node.put_item(
        DictionaryKeys.guardians(account),
        CLValue.account_hash_list([g.account_hash for g in guardians]),
    )
    fake_node.put_item(DictionaryKeys.threshold(account), CLValue.u8(2))
    return account


def seed_recovery(fake_node, recovery_id, account, new_key, approvals=0, approved=False, finalized=None):
    fake_node.put_item(DictionaryKeys.recovery(recovery_id, RecoveryField.ACCOUNT), CLValue.account_hash(account))
    fake_node.put_item(DictionaryKeys.recovery(recovery_id, RecoveryField.NEW_KEY), CLValue.public_key(new_key))
    fake_node.put_item(DictionaryKeys.recovery(recovery_id, RecoveryField.APPROVAL_COUNT), CLValue.u8(approvals))
    fake_node.put_item(DictionaryKeys.recovery(recovery_id, RecoveryField.APPROVED), CLValue.bool(approved))
    if finalized is not None:
        fake_node.put_item(DictionaryKeys.recovery(recovery_id, RecoveryField.FINALIZED), CLValue.bool(finalized))


def seed_guardian_index(fake_node, guardian, ids):
    fake_node.put_item(DictionaryKeys.guardian_index(guardian), CLValue(list_of(CL_U256), list(ids)))


class TestGuardianSet:
    """Tests for guardian set reads."""

    async def test_registered_account(self, reconstructor, registered, owner, guardians):
        assert await reconstructor.has_guardians(owner.hex)
        assert await reconstructor.get_guardians(owner.hex) == [g.account_hash.display for g in guardians]
        assert await reconstructor.get_threshold(owner.account_hash.display) == 2

    async def test_account_status(self, reconstructor, registered, owner, guardians):
        status = await reconstructor.get_account_status(owner.public_key)
        assert status.to_dict() == {
            "account_hash": owner.account_hash.display,
            "has_guardians": True,
            "guardians": [g.account_hash.display for g in guardians],
            "threshold": 2,
        }

    async def test_unknown_account_is_empty(self, reconstructor, signer_factory):
        """Should answer empty values for an account with no state."""
        stranger = signer_factory(99)
        assert await reconstructor.has_guardians(stranger.hex) is False
        assert await reconstructor.get_guardians(stranger.hex) == []
        assert await reconstructor.get_threshold(stranger.hex) == 0
        assert await reconstructor.get_active_recovery(stranger.hex) is None
        assert await reconstructor.get_recoveries_for_guardian(stranger.hex) == []

    async def test_unparseable_account(self, reconstructor):
        assert await reconstructor.get_guardians("garbage") == []
        status = await reconstructor.get_account_status("garbage")
        assert status.account_hash == ""
        assert status.has_guardians is False

    async def test_node_down_is_empty(self, gateway_factory, owner):
        gateway = gateway_factory(lambda request: httpx.Response(502, text="bad gateway"))
        reconstructor = StateReconstructor(gateway)
        assert await reconstructor.get_guardians(owner.hex) == []
        assert await reconstructor.get_recovery_by_id(1) is None

    async def test_reads_share_one_state_root(self, reconstructor, registered, fake_node, owner):
        await reconstructor.get_account_status(owner.hex)
        assert fake_node.methods().count("chain_get_state_root_hash") == 1


class TestRecoveryRequests:
    """Tests for recovery request reconstruction."""

    async def test_fresh_recovery(self, reconstructor, registered, fake_node, owner, guardians):
        """Should read back a just-initiated recovery with no approvals."""
        new_key = guardians[0].public_key
        seed_recovery(fake_node, 1, owner.account_hash, new_key)
        fake_node.put_item(DictionaryKeys.active_recovery(owner.account_hash), CLValue.u256(1))

        assert await reconstructor.get_active_recovery(owner.hex) == 1
        request = await reconstructor.get_recovery_by_id("1")

        assert request.target_account == owner.account_hash.display
        assert request.new_key == new_key.hex
        assert request.approval_count == 0
        assert request.is_approved is False
        assert request.is_finalized is False
        assert request.approvals == {g.account_hash.display: False for g in guardians}

    async def test_approval_flags(self, reconstructor, registered, fake_node, owner, guardians):
        seed_recovery(fake_node, 2, owner.account_hash, guardians[0].public_key, approvals=1)
        fake_node.put_item(DictionaryKeys.guardian_approval(2, guardians[1].account_hash), CLValue.bool(True))

        request = await reconstructor.get_recovery_by_id(2)

        assert request.approvals[guardians[1].account_hash.display] is True
        assert request.approvals[guardians[0].account_hash.display] is False
        assert request.to_dict()["recovery_id"] == "2"

    async def test_approval_count_clamped(self, reconstructor, registered, fake_node, owner, guardians):
        seed_recovery(fake_node, 3, owner.account_hash, guardians[0].public_key, approvals=7)
        request = await reconstructor.get_recovery_by_id(3)
        assert request.approval_count == len(guardians)

    @pytest.mark.parametrize("recovery_id", [404, -1, "abc"])
    async def test_missing_recovery(self, reconstructor, recovery_id):
        assert await reconstructor.get_recovery_by_id(recovery_id) is None


class TestGuardianPending:
    """Tests for a guardian's pending recoveries."""

    async def test_finalized_recovery_excluded(self, reconstructor, registered, fake_node, owner, guardians):
        """Should drop a finalized recovery from every guardian's list and keep an open one."""
        new_key = guardians[2].public_key
        seed_recovery(fake_node, 1, owner.account_hash, new_key, approvals=3, approved=True, finalized=True)
        seed_recovery(fake_node, 2, owner.account_hash, new_key, approvals=1)
        for guardian in guardians:
            fake_node.put_item(DictionaryKeys.guardian_approval(1, guardian.account_hash), CLValue.bool(True))
            seed_guardian_index(fake_node, guardian.account_hash, [1, 2])

        for guardian in guardians:
            pending = await reconstructor.get_recoveries_for_guardian(guardian.hex)
            assert [r.recovery_id for r in pending] == [2]

    async def test_duplicate_index_entries(self, reconstructor, registered, fake_node, owner, guardians):
        seed_recovery(fake_node, 5, owner.account_hash, guardians[0].public_key)
        seed_guardian_index(fake_node, guardians[1].account_hash, [5, 5])
        pending = await reconstructor.get_recoveries_for_guardian(guardians[1].account_hash.display)
        assert len(pending) == 1

    async def test_missing_request_skipped(self, reconstructor, registered, fake_node, owner, guardians):
        seed_recovery(fake_node, 6, owner.account_hash, guardians[0].public_key)
        seed_guardian_index(fake_node, guardians[0].account_hash, [6, 7])
        pending = await reconstructor.get_recoveries_for_guardian(guardians[0].hex)
        assert [r.recovery_id for r in pending] == [6]


class TestNamedKeyLayout:
    """Tests for the named-key storage layout."""

    @pytest.fixture
    def named_reconstructor(self, gateway_factory, fake_node, settings):
        named = settings.model_copy(update={"storage_layout": "named_keys"})
        return StateReconstructor(gateway_factory(fake_node.handler, named))

    async def test_guardian_set(self, named_reconstructor, fake_node, owner, guardians):
        account = owner.account_hash
        fake_node.put_named_key(account, NamedKeys.initialized(account), CLValue.bool(True))
        fake_node.put_named_key(account, NamedKeys.threshold(account), CLValue.u8(3))
        fake_node.put_named_key(account, NamedKeys.guardians(account), {
            "CLValue": {"data": [g.account_hash.display for g in guardians]},
        })

        assert named_reconstructor.layout is StorageLayout.NAMED_KEYS
        status = await named_reconstructor.get_account_status(owner.hex)
        assert status.has_guardians
        assert status.threshold == 3
        assert status.guardians == [g.account_hash.display for g in guardians]
        assert "state_get_dictionary_item" not in fake_node.methods()

    async def test_recovery_on_holder(self, named_reconstructor, fake_node, owner, guardians):
        account = owner.account_hash
        fake_node.put_named_key(account, NamedKeys.recovery(4, RecoveryField.ACCOUNT), CLValue.account_hash(account))
        fake_node.put_named_key(
            account, NamedKeys.recovery(4, RecoveryField.NEW_KEY), CLValue.public_key(guardians[0].public_key)
        )
        fake_node.put_named_key(account, NamedKeys.recovery(4, RecoveryField.APPROVAL_COUNT), CLValue.u8(1))

        request = await named_reconstructor.get_recovery_by_id(4, holder=owner.hex)

        assert request.approval_count == 1
        assert request.approvals == {}
        assert await named_reconstructor.get_recovery_by_id(4) is None

    async def test_no_guardian_index(self, named_reconstructor, guardians):
        assert await named_reconstructor.get_recoveries_for_guardian(guardians[0].hex) == []


class TestAccountKeys:
    """Tests for account key reads."""

    async def test_account_keys(self, reconstructor, fake_node, owner):
        fake_node.accounts[owner.account_hash.display] = {
            "Account": {
                "account_hash": owner.account_hash.display,
                "associated_keys": [{"account_hash": owner.account_hash.display, "weight": 1}],
                "action_thresholds": {"deployment": 1, "key_management": 1},
            }
        }
        record = await reconstructor.get_account_keys(owner.hex)
        assert record.associated_keys[0].account_hash == owner.account_hash.display

    async def test_missing_account(self, reconstructor, owner):
        assert await reconstructor.get_account_keys(owner.hex) is None


class TestThresholdBounds:
    """Tests for thresholds read back outside 2..guardian count."""

    @pytest.mark.parametrize("stored, expected", [(9, 3), (1, 2), (0, 2), (3, 3)])
    async def test_threshold_clamped_to_guardian_set(
        self, reconstructor, registered, fake_node, owner, stored, expected
    ):
        fake_node.put_item(DictionaryKeys.threshold(registered), CLValue.u8(stored))

        status = await reconstructor.get_account_status(owner.hex)

        assert status.threshold == expected
        assert len(status.guardians) == 3
        assert await reconstructor.get_threshold(owner.hex) == expected

    async def test_threshold_without_guardian_set(self, reconstructor, fake_node, owner, guardians):
        account = owner.account_hash
        fake_node.put_item(DictionaryKeys.threshold(account), CLValue.u8(2))
        fake_node.put_item(DictionaryKeys.guardians(account), CLValue.account_hash_list([guardians[0].account_hash]))

        status = await reconstructor.get_account_status(owner.hex)

        assert status.threshold == 0
        assert await reconstructor.get_threshold(owner.hex) == 0

    async def test_out_of_range_threshold_logged(self, reconstructor, registered, fake_node, owner, caplog):
        fake_node.put_item(DictionaryKeys.threshold(registered), CLValue.u8(9))
        with caplog.at_level(logging.WARNING, logger="sentinelx_chain.state"):
            await reconstructor.get_account_status(owner.hex)
        assert any("threshold 9" in r.getMessage() for r in caplog.records)


class TestOperationLogging:

    async def test_status_read_is_timed(self, reconstructor, registered, owner, caplog):
        with caplog.at_level(logging.DEBUG, logger="sentinelx_chain"):
            await reconstructor.get_account_status(owner.hex)
        operations = [r.operation for r in caplog.records if hasattr(r, "operation")]
        assert operations[-1]["operation_type"] == "state_read"
        assert operations[-1]["success"] is True
        assert operations[-1]["metadata"]["account"] == owner.account_hash.display
