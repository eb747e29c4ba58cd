"""
Tests for sentinelx_chain.builder.
"""
from __future__ import annotations

import pytest

from sentinelx_chain.actions import ActionEncoder
from sentinelx_chain.builder import DeployBuilder, ModuleBytesTarget, StoredContractTarget
from sentinelx_chain.clvalue import CLValue
from sentinelx_chain.config import MOTES_PER_CSPR
from sentinelx_chain.deploy import ModuleBytes, RuntimeArgs, StoredContractByHash, session_args
from sentinelx_chain.exceptions import ArtifactNotFoundError, InvalidArgumentError

WASM = b"\x00asm\x01\x00\x00\x00"
TIMESTAMP_MS = 1_700_000_000_000


@pytest.fixture
def builder(settings):
    return DeployBuilder(settings)


@pytest.fixture
def artifacts(settings):
    """Write every configured bytecode module."""
    for path in (
        settings.wasm.recovery_registry,
        settings.wasm.recovery_session,
        settings.wasm.add_key,
        settings.wasm.remove_key,
        settings.wasm.update_thresholds,
    ):
        path.write_bytes(WASM)
    return settings.wasm


class TestStoredContract:
    """Tests for deploys calling a stored contract."""

    def test_header_from_settings(self, builder, settings, owner):
        encoded = ActionEncoder(settings).approve_recovery(5)
        deploy = builder.build_action(owner.hex, encoded, timestamp_ms=TIMESTAMP_MS)

        assert deploy.header.chain_name == "casper-test"
        assert deploy.header.ttl == settings.deploy.ttl_ms
        assert deploy.header.gas_price == 1
        assert deploy.header.timestamp == TIMESTAMP_MS
        assert deploy.header.account == owner.public_key
        assert not deploy.is_signed

    def test_session_is_call_by_hash(self, builder, settings, owner):
        encoded = ActionEncoder(settings).approve_recovery(5)
        deploy = builder.build_action(owner.public_key, encoded, timestamp_ms=TIMESTAMP_MS)

        assert isinstance(deploy.session, StoredContractByHash)
        assert deploy.session.hash.hex() == settings.contract_hash
        assert deploy.session.entry_point == "approve"
        assert session_args(deploy) == {"action": 3, "id": 5}

    def test_payment_amount(self, builder, settings, owner):
        encoded = ActionEncoder(settings).approve_recovery(5)
        deploy = builder.build_action(owner.hex, encoded, timestamp_ms=TIMESTAMP_MS)
        assert deploy.payment.args.get("amount").value == settings.deploy.payment_amount

    def test_deterministic(self, builder, settings, owner):
        """Should produce identical deploys for identical inputs."""
        encoded = ActionEncoder(settings).approve_recovery(5)
        first = builder.build_action(owner.hex, encoded, timestamp_ms=TIMESTAMP_MS)
        second = builder.build_action(owner.hex, encoded, timestamp_ms=TIMESTAMP_MS)
        assert first.to_bytes() == second.to_bytes()

    def test_bad_contract_hash(self, builder, owner):
        with pytest.raises(InvalidArgumentError):
            builder.build(owner.hex, StoredContractTarget("abcd", "approve"), RuntimeArgs(), 1)


class TestModuleBytes:
    """Tests for deploys running bytecode from disk."""

    def test_missing_artifact(self, builder, settings, owner):
        """Should fail with a not-found error before anything else happens."""
        encoded = ActionEncoder(settings).install_contract()
        with pytest.raises(ArtifactNotFoundError) as exc_info:
            builder.build_action(owner.hex, encoded)
        assert isinstance(exc_info.value, FileNotFoundError)
        assert exc_info.value.path.endswith("recovery_registry.wasm")

    def test_empty_artifact(self, builder, settings, owner):
        settings.wasm.remove_key.write_bytes(b"")
        with pytest.raises(ArtifactNotFoundError):
            builder.load_module(settings.wasm.remove_key)

    def test_install_contract(self, builder, settings, owner, artifacts):
        encoded = ActionEncoder(settings).install_contract()
        deploy = builder.build_action(owner.hex, encoded, timestamp_ms=TIMESTAMP_MS)

        assert isinstance(deploy.session, ModuleBytes)
        assert deploy.session.module_bytes == WASM
        assert session_args(deploy) == {}
        assert deploy.payment.args.get("amount").value == 400 * MOTES_PER_CSPR

    def test_session_bytecode_recovery(self, session_settings, owner, artifacts):
        encoded = ActionEncoder(session_settings).initiate_recovery(owner.hex, owner.hex)
        deploy = DeployBuilder(session_settings).build_action(owner.hex, encoded, timestamp_ms=TIMESTAMP_MS)

        assert isinstance(deploy.session, ModuleBytes)
        assert deploy.session.args.names() == ["action", "account", "new_key"]
        assert deploy.payment.args.get("amount").value == session_settings.deploy.session_payment_amount

    def test_module_cache(self, builder, settings, artifacts):
        first = builder.load_module(settings.wasm.add_key)
        settings.wasm.add_key.write_bytes(b"changed")
        assert builder.load_module(settings.wasm.add_key) is first


class TestValidation:
    """Tests for builder input validation."""

    @pytest.mark.parametrize("payment", [0, -1, "5", True])
    def test_rejects_payment(self, builder, settings, owner, payment):
        target = StoredContractTarget(settings.contract_hash, "approve")
        with pytest.raises(InvalidArgumentError):
            builder.build(owner.hex, target, RuntimeArgs.from_map({"id": CLValue.u256(1)}), payment)

    def test_rejects_bad_caller(self, builder, settings):
        target = ModuleBytesTarget(settings.wasm.add_key)
        with pytest.raises(InvalidArgumentError) as exc_info:
            builder.build("feed", target, RuntimeArgs(), 1)
        assert exc_info.value.reason == InvalidArgumentError.INVALID_KEY
