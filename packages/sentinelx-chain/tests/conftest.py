"""
Pytest configuration for sentinelx-chain tests.
"""
from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx
import pytest
import pytest_asyncio
from nacl.signing import SigningKey

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

# Set test environment
os.environ.setdefault("SENTINELX_ENVIRONMENT", "test")
os.environ.setdefault("SENTINELX_CHAIN_NAME", "casper-test")

from sentinelx_chain.clvalue import CLValue  # noqa: E402
from sentinelx_chain.config import SentinelSettings  # noqa: E402
from sentinelx_chain.deploy import Deploy  # noqa: E402
from sentinelx_chain.gateway import LedgerGateway  # noqa: E402
from sentinelx_chain.keys import AccountHash, KeyAlgorithm, PublicKey  # noqa: E402

CONTRACT_HASH = "ab" * 32
STATE_ROOT_HASH = "cd" * 32
NODE_URL = "http://node.test/rpc"


class Signer:
    """An ed25519 test account."""

    def __init__(self, seed: int):
        self.signing_key = SigningKey(bytes([seed]) * 32)
        self.public_key = PublicKey(KeyAlgorithm.ED25519, bytes(self.signing_key.verify_key))

    @property
    def hex(self) -> str:
        return self.public_key.hex

    @property
    def account_hash(self) -> AccountHash:
        return self.public_key.account_hash()

    def sign(self, deploy: Deploy) -> Deploy:
        signature = self.signing_key.sign(deploy.hash).signature
        return deploy.with_approval(self.public_key, bytes([KeyAlgorithm.ED25519]) + signature)


class FakeLedgerNode:
    """In-memory JSON-RPC node served through httpx.MockTransport."""

    def __init__(self, state_root_hash: str = STATE_ROOT_HASH):
        self.state_root_hash = state_root_hash
        self.dictionary: Dict[str, Any] = {}
        self.named_keys: Dict[Tuple[str, str], Any] = {}
        self.accounts: Dict[str, Any] = {}
        self.deploys: Dict[str, List[Any]] = {}
        self.requests: List[Dict[str, Any]] = []
        self.submitted: List[Dict[str, Any]] = []
        self.put_response: Optional[httpx.Response] = None

    # Seeding

    def put_item(self, item_key: str, value: Union[CLValue, Any]) -> None:
        self.dictionary[item_key] = self._stored(value)

    def put_named_key(self, account: AccountHash, name: str, value: Union[CLValue, Any]) -> None:
        self.named_keys[(account.display, name)] = self._stored(value)

    def put_deploy_records(self, deploy_hash: str, *records: Any) -> None:
        """Successive info_get_deploy results; the last one repeats."""
        self.deploys[deploy_hash] = list(records)

    @staticmethod
    def _stored(value: Any) -> Any:
        if isinstance(value, CLValue):
            return {"CLValue": value.to_json()}
        return value

    def methods(self) -> List[str]:
        return [r["method"] for r in self.requests]

    # Transport

    @staticmethod
    def _result(payload: Dict[str, Any], result: Any) -> httpx.Response:
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": result})

    @staticmethod
    def _error(payload: Dict[str, Any], code: int, message: str) -> httpx.Response:
        return httpx.Response(
            200,
            json={"jsonrpc": "2.0", "id": payload["id"], "error": {"code": code, "message": message}},
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.requests.append(payload)
        method = payload["method"]
        params = payload.get("params") or {}

        if method == "chain_get_state_root_hash":
            return self._result(payload, {"api_version": "1.5.6", "state_root_hash": self.state_root_hash})

        if method == "state_get_dictionary_item":
            item_key = params["dictionary_identifier"]["ContractNamedKey"]["dictionary_item_key"]
            if item_key not in self.dictionary:
                return self._error(payload, -32003, "ValueNotFound")
            return self._result(payload, {
                "api_version": "1.5.6",
                "dictionary_key": "dictionary-" + "00" * 32,
                "stored_value": self.dictionary[item_key],
                "merkle_proof": "",
            })

        if method == "query_global_state":
            key, path = params["key"], params["path"]
            value = self.named_keys.get((key, path[0])) if path else self.accounts.get(key)
            if value is None:
                return self._error(payload, -32003, "Failed to get state item")
            return self._result(payload, {"api_version": "1.5.6", "stored_value": value, "merkle_proof": ""})

        if method == "account_put_deploy":
            if self.put_response is not None:
                return self.put_response
            self.submitted.append(params["deploy"])
            return self._result(payload, {"api_version": "1.5.6", "deploy_hash": params["deploy"]["hash"]})

        if method == "info_get_deploy":
            records = self.deploys.get(params["deploy_hash"])
            if not records:
                return self._error(payload, -32000, "deploy not known")
            record = records.pop(0) if len(records) > 1 else records[0]
            return self._result(payload, record)

        return self._error(payload, -32601, f"Method not found: {method}")


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture
def settings(tmp_path) -> SentinelSettings:
    """Settings pointing at a stored contract and a temp artifact directory."""
    return SentinelSettings(
        node_url=NODE_URL,
        chain_name="casper-test",
        contract_hash=CONTRACT_HASH,
        wasm={
            "recovery_registry": tmp_path / "recovery_registry.wasm",
            "recovery_session": tmp_path / "recovery_session.wasm",
            "add_key": tmp_path / "add_associated_key.wasm",
            "remove_key": tmp_path / "remove_associated_key.wasm",
            "update_thresholds": tmp_path / "update_thresholds.wasm",
        },
        polling={"interval_seconds": 0.01, "timeout_seconds": 0.2},
    )


@pytest.fixture
def session_settings(settings) -> SentinelSettings:
    """Same settings with no contract hash: recovery actions run as session bytecode."""
    return settings.model_copy(update={"contract_hash": ""})


@pytest.fixture
def owner() -> Signer:
    return Signer(1)


@pytest.fixture
def guardians() -> List[Signer]:
    return [Signer(2), Signer(3), Signer(4)]


@pytest.fixture
def fake_node() -> FakeLedgerNode:
    return FakeLedgerNode()


@pytest_asyncio.fixture
async def gateway(settings, fake_node):
    """Gateway wired to the fake node."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_node.handler))
    gw = LedgerGateway(settings, http_client=client)
    yield gw
    await client.aclose()


@pytest_asyncio.fixture
async def gateway_factory(settings):
    """Build gateways served by arbitrary MockTransport handlers."""
    clients = []

    def factory(handler, custom_settings: Optional[SentinelSettings] = None) -> LedgerGateway:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return LedgerGateway(custom_settings or settings, http_client=client)

    yield factory
    for client in clients:
        await client.aclose()


@pytest.fixture
def signer_factory():
    return Signer
