"""
Tests for sentinelx_chain.gateway.

Tests cover:
- JSON-RPC request shapes for reads
- Error mapping on the raising path (_rpc, put_deploy)
- Raw submission: every failure returned as a SubmissionResult
"""
from __future__ import annotations

import json

import httpx
import pytest

from conftest import CONTRACT_HASH, STATE_ROOT_HASH
from sentinelx_chain.actions import ActionEncoder
from sentinelx_chain.builder import DeployBuilder
from sentinelx_chain.clvalue import CLValue
from sentinelx_chain.envelopes import DeployStatus
from sentinelx_chain.exceptions import (
    DeployFormatError,
    InvalidArgumentError,
    LedgerHTTPError,
    ResponseFormatError,
    RPCError,
)
from sentinelx_chain.gateway import LedgerGateway
from sentinelx_chain.storage_keys import DictionaryKeys

pytestmark = [pytest.mark.asyncio]

TIMESTAMP_MS = 1_700_000_000_000


@pytest.fixture
def signed_deploy(settings, owner):
    encoded = ActionEncoder(settings).approve_recovery(1)
    return owner.sign(DeployBuilder(settings).build_action(owner.hex, encoded, timestamp_ms=TIMESTAMP_MS))


def reply(status_code=200, **kwargs):
    """Handler answering every request with the same response."""
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, **kwargs)
    return handler


class TestReads:
    """Tests for state reads."""

    async def test_state_root_hash(self, gateway, fake_node):
        assert await gateway.get_state_root_hash() == STATE_ROOT_HASH
        assert "params" not in fake_node.requests[0]
        assert fake_node.requests[0]["jsonrpc"] == "2.0"

    async def test_dictionary_item_request(self, gateway, fake_node, owner):
        """Should address the item through the contract's named dictionary."""
        item_key = DictionaryKeys.threshold(owner.account_hash)
        fake_node.put_item(item_key, CLValue.u8(2))

        stored = await gateway.get_dictionary_item(item_key)

        assert stored.value == 2
        params = fake_node.requests[-1]["params"]
        assert params["state_root_hash"] == STATE_ROOT_HASH
        assert params["dictionary_identifier"] == {
            "ContractNamedKey": {
                "key": f"hash-{CONTRACT_HASH}",
                "dictionary_name": "d",
                "dictionary_item_key": item_key,
            }
        }

    async def test_dictionary_item_uses_given_root(self, gateway, fake_node):
        fake_node.put_item("c", CLValue.u256(1))
        await gateway.get_dictionary_item("c", state_root_hash="ee" * 32)
        assert fake_node.methods() == ["state_get_dictionary_item"]

    async def test_dictionary_item_without_contract(self, gateway_factory, session_settings, fake_node):
        gateway = gateway_factory(fake_node.handler, session_settings)
        with pytest.raises(InvalidArgumentError):
            await gateway.get_dictionary_item("c")
        assert fake_node.requests == []

    async def test_missing_item_raises_rpc_error(self, gateway):
        with pytest.raises(RPCError) as exc_info:
            await gateway.get_dictionary_item("c", state_root_hash=STATE_ROOT_HASH)
        assert exc_info.value.code == -32003

    async def test_query_state_named_key(self, gateway, fake_node, owner):
        fake_node.put_named_key(owner.account_hash, "grp_init", CLValue.bool(True))
        stored = await gateway.query_state(owner.account_hash.display, ["grp_init"])
        assert stored.value is True
        params = fake_node.requests[-1]["params"]
        assert params["state_identifier"] == {"StateRootHash": STATE_ROOT_HASH}
        assert params["path"] == ["grp_init"]

    async def test_get_account(self, gateway, fake_node, owner, guardians):
        fake_node.accounts[owner.account_hash.display] = {
            "Account": {
                "account_hash": owner.account_hash.display,
                "associated_keys": [
                    {"account_hash": owner.account_hash.display, "weight": 1},
                    {"account_hash": guardians[0].account_hash.display, "weight": 1},
                ],
                "action_thresholds": {"deployment": 1, "key_management": 1},
            }
        }
        record = await gateway.get_account(owner.public_key)
        assert len(record.associated_keys) == 2
        assert record.account_hash == owner.account_hash.display

    async def test_execution_outcome(self, gateway, fake_node):
        deploy_hash = "aa" * 32
        fake_node.put_deploy_records(deploy_hash, {
            "deploy": {},
            "execution_results": [{"block_hash": "bb" * 32, "result": {"Success": {}}}],
        })
        outcome = await gateway.get_execution_outcome(deploy_hash)
        assert outcome.status is DeployStatus.SUCCESS
        assert fake_node.requests[-1]["params"] == {"deploy_hash": deploy_hash, "finalized_approvals": False}


class TestRpcErrors:
    """Tests for error mapping on the raising path."""

    async def test_http_status(self, gateway_factory):
        gateway = gateway_factory(reply(503, text="busy"))
        with pytest.raises(LedgerHTTPError) as exc_info:
            await gateway.get_state_root_hash()
        assert exc_info.value.status_code == 503
        assert exc_info.value.body == "busy"

    async def test_non_json_body(self, gateway_factory):
        gateway = gateway_factory(reply(200, text="<html>"))
        with pytest.raises(LedgerHTTPError):
            await gateway.get_state_root_hash()

    async def test_transport_failure(self, gateway_factory):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        gateway = gateway_factory(handler)
        with pytest.raises(LedgerHTTPError):
            await gateway.get_state_root_hash()

    async def test_rpc_error_object(self, gateway_factory):
        gateway = gateway_factory(reply(json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "bad params", "data": "x"}}))
        with pytest.raises(RPCError) as exc_info:
            await gateway.get_state_root_hash()
        assert exc_info.value.code == -32602
        assert exc_info.value.data == "x"

    async def test_non_object_body(self, gateway_factory):
        gateway = gateway_factory(reply(json=[1, 2]))
        with pytest.raises(ResponseFormatError):
            await gateway.get_state_root_hash()


class TestPutDeploy:
    """Tests for the validated submission path."""

    async def test_submits_and_returns_hash(self, gateway, fake_node, signed_deploy):
        deploy_hash = await gateway.put_deploy(signed_deploy)
        assert deploy_hash == signed_deploy.hash_hex
        assert fake_node.submitted == [signed_deploy.to_json()["deploy"]]

    async def test_rejects_unsigned(self, gateway, fake_node, settings, owner):
        encoded = ActionEncoder(settings).approve_recovery(1)
        unsigned = DeployBuilder(settings).build_action(owner.hex, encoded)
        with pytest.raises(InvalidArgumentError):
            await gateway.put_deploy(unsigned)
        assert fake_node.requests == []

    async def test_rejects_bad_result_schema(self, gateway, fake_node, signed_deploy):
        fake_node.put_response = httpx.Response(
            200, json={"jsonrpc": "2.0", "id": 1, "result": {"deploy_hash": "not-hex"}}
        )
        with pytest.raises(ResponseFormatError):
            await gateway.put_deploy(signed_deploy)

    async def test_rejects_mismatched_hash(self, gateway, fake_node, signed_deploy):
        fake_node.put_response = httpx.Response(
            200, json={"jsonrpc": "2.0", "id": 1, "result": {"api_version": "1.5.6", "deploy_hash": "00" * 32}}
        )
        with pytest.raises(ResponseFormatError) as exc_info:
            await gateway.put_deploy(signed_deploy)
        assert exc_info.value.details["actual"] == "00" * 32

    async def test_rpc_rejection_raises(self, gateway, fake_node, signed_deploy):
        fake_node.put_response = httpx.Response(
            200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32008, "message": "invalid deploy"}}
        )
        with pytest.raises(RPCError):
            await gateway.put_deploy(signed_deploy)


class TestSubmitRaw:
    """Tests for the raw submission path."""

    async def test_success(self, gateway, fake_node, signed_deploy):
        result = await gateway.submit_deploy_raw(signed_deploy.to_json_string())
        assert result.success
        assert result.deploy_hash == signed_deploy.hash_hex
        assert result.to_dict() == {"success": True, "deploy_hash": signed_deploy.hash_hex}
        assert fake_node.submitted[0]["hash"] == signed_deploy.hash_hex

    async def test_accepts_bare_document(self, gateway, fake_node, signed_deploy):
        result = await gateway.submit_deploy_raw(signed_deploy.to_json()["deploy"])
        assert result.success
        assert "deploy" not in fake_node.submitted[0]

    async def test_http_500_returns_status_and_body(self, gateway_factory, signed_deploy):
        """Should return a failed result carrying the status and raw body."""
        gateway = gateway_factory(reply(500, text="internal failure: node overloaded"))
        result = await gateway.submit_deploy_raw(signed_deploy.to_json())
        assert not result.success
        assert result.status_code == 500
        assert result.body == "internal failure: node overloaded"
        assert result.error.startswith("HTTP 500")
        assert result.to_dict()["body"] == "internal failure: node overloaded"

    async def test_empty_body(self, gateway_factory, signed_deploy):
        gateway = gateway_factory(reply(200, content=b""))
        result = await gateway.submit_deploy_raw(signed_deploy.to_json())
        assert not result.success
        assert result.error == "Empty response body"

    async def test_non_json_body(self, gateway_factory, signed_deploy):
        gateway = gateway_factory(reply(200, text="Bad Gateway"))
        result = await gateway.submit_deploy_raw(signed_deploy.to_json())
        assert not result.success
        assert result.body == "Bad Gateway"

    async def test_rpc_error(self, gateway, fake_node, signed_deploy):
        fake_node.put_response = httpx.Response(
            200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32008, "message": "invalid deploy"}}
        )
        result = await gateway.submit_deploy_raw(signed_deploy.to_json())
        assert not result.success
        assert result.rpc_code == -32008
        assert result.error == "invalid deploy"
        assert json.loads(result.body)["error"]["code"] == -32008

    async def test_missing_hash(self, gateway, fake_node, signed_deploy):
        fake_node.put_response = httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {}})
        result = await gateway.submit_deploy_raw(signed_deploy.to_json())
        assert not result.success

    async def test_transport_failure(self, gateway_factory, signed_deploy):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        gateway = gateway_factory(handler)
        result = await gateway.submit_deploy_raw(signed_deploy.to_json())
        assert not result.success
        assert result.status_code is None

    async def test_invalid_json_string_raises(self, gateway):
        with pytest.raises(DeployFormatError):
            await gateway.submit_deploy_raw("{not json")


class TestLifecycle:
    """Tests for client ownership."""

    async def test_injected_client_left_open(self, settings, fake_node):
        client = httpx.AsyncClient(transport=httpx.MockTransport(fake_node.handler))
        async with LedgerGateway(settings, http_client=client) as gateway:
            await gateway.get_state_root_hash()
        assert not client.is_closed
        await client.aclose()
