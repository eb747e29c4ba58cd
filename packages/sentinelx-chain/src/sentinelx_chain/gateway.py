"""
JSON-RPC gateway to a ledger node.

Features:
- Lazy shared httpx.AsyncClient (or an injected one)
- Global-state reads normalized through envelopes.py
- Two submission paths:
    put_deploy          validated: typed Deploy in, schema-checked result out, raises
    submit_deploy_raw   manual envelope: every failure becomes a SubmissionResult
- Per-call RPC logging through ChainLogger

One gateway is constructed at startup and injected into the reconstructor,
tracker and service.
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import SentinelSettings, load_settings
from .deploy import Deploy
from .envelopes import (
    AccountRecord,
    ExecutionOutcome,
    StoredValue,
    normalize_account,
    normalize_execution_outcome,
    normalize_state_root_hash,
    normalize_stored_value,
    normalize_submitted_hash,
)
from .exceptions import (
    DeployFormatError,
    InvalidArgumentError,
    LedgerHTTPError,
    ResponseFormatError,
    RPCError,
)
from .keys import AccountRef, to_account_hash
from .logging_utils import ChainLogger, OperationType, get_chain_logger, mask_url

logger = logging.getLogger(__name__)


class PutDeployResult(BaseModel):
    """Schema of a successful account_put_deploy result."""
    model_config = ConfigDict(extra="allow")

    api_version: str
    deploy_hash: str = Field(pattern=r"^[0-9a-fA-F]{64}$")


@dataclass
class SubmissionResult:
    """Outcome of a raw submission. Never raised, always returned."""
    success: bool
    deploy_hash: Optional[str] = None
    status_code: Optional[int] = None
    error: Optional[str] = None
    body: str = ""
    rpc_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success}
        if self.deploy_hash:
            result["deploy_hash"] = self.deploy_hash
        if not self.success:
            result["error"] = self.error
            result["status_code"] = self.status_code
            result["body"] = self.body
            if self.rpc_code is not None:
                result["rpc_code"] = self.rpc_code
        return result


def _rpc_error_from(error: Any) -> RPCError:
    if isinstance(error, dict):
        return RPCError(
            message=str(error.get("message") or error),
            code=error.get("code"),
            data=error.get("data"),
        )
    return RPCError(message=str(error))


class LedgerGateway:
    """Async JSON-RPC client for the ledger node."""

    def __init__(
        self,
        settings: Optional[SentinelSettings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        chain_logger: Optional[ChainLogger] = None,
    ):
        self._settings = settings or load_settings()
        self._http_client = http_client
        self._owns_client = http_client is None
        self._chain_logger = chain_logger or get_chain_logger()
        self._request_id = 0

    @property
    def settings(self) -> SentinelSettings:
        return self._settings

    @property
    def node_url(self) -> str:
        return self._settings.node_url

    @property
    def chain_name(self) -> str:
        return self._settings.chain_name

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.rpc_timeout_seconds, connect=10.0),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
            self._owns_client = True
        return self._http_client

    def _envelope(self, method: str, params: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        self._request_id += 1
        payload: Dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
        }
        if params is not None:
            payload["params"] = dict(params)
        return payload

    async def _rpc(self, method: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """Make a JSON-RPC call and return its result.

        Raises:
            LedgerHTTPError: transport failure, non-2xx status, or non-JSON body
            RPCError: the node answered with an error object
            ResponseFormatError: the body is not a JSON-RPC response object
        """
        payload = self._envelope(method, params)
        request_id = payload["id"]
        start_time = time.time()
        client = await self._get_client()

        def record(success: bool, code: Optional[int] = None, message: Optional[str] = None) -> None:
            self._chain_logger.log_rpc_call(
                method=method,
                endpoint_url=self.node_url,
                chain=self.chain_name,
                request_id=request_id,
                duration_ms=(time.time() - start_time) * 1000,
                success=success,
                error_code=code,
                error_message=message,
            )

        try:
            response = await client.post(
                self.node_url,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            record(False, message=str(e))
            raise LedgerHTTPError(f"Request to {mask_url(self.node_url)} failed: {e}") from e

        if not response.is_success:
            record(False, code=response.status_code, message=response.reason_phrase)
            raise LedgerHTTPError(
                f"Node returned HTTP {response.status_code} for {method}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            body = response.json()
        except ValueError:
            record(False, code=response.status_code, message="non-JSON body")
            raise LedgerHTTPError(
                f"Node returned a non-JSON body for {method}",
                status_code=response.status_code,
                body=response.text,
            ) from None

        if not isinstance(body, dict):
            record(False, message="unexpected body")
            raise ResponseFormatError(f"Unexpected JSON-RPC body for {method}", details={"body": body})

        if body.get("error") is not None:
            error = _rpc_error_from(body["error"])
            record(False, code=error.code, message=error.message)
            raise error

        record(True)
        return body.get("result")

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_state_root_hash(self) -> str:
        result = await self._rpc("chain_get_state_root_hash")
        return normalize_state_root_hash(result)

    async def query_state(
        self,
        key: str,
        path: Iterable[str] = (),
        state_root_hash: Optional[str] = None,
    ) -> Optional[StoredValue]:
        """query_global_state at a state root (current root when omitted)."""
        root = state_root_hash or await self.get_state_root_hash()
        result = await self._rpc("query_global_state", {
            "state_identifier": {"StateRootHash": root},
            "key": key,
            "path": list(path),
        })
        return normalize_stored_value(result)

    async def get_dictionary_item(
        self,
        item_key: str,
        contract_hash: Optional[str] = None,
        dictionary_name: Optional[str] = None,
        state_root_hash: Optional[str] = None,
    ) -> Optional[StoredValue]:
        """Read one item of a contract dictionary addressed by the contract's named key."""
        contract_hash = contract_hash or self._settings.contract_hash
        if not contract_hash:
            raise InvalidArgumentError(
                "No contract hash configured for dictionary reads",
                field="contract_hash",
            )
        if not contract_hash.startswith("hash-"):
            contract_hash = f"hash-{contract_hash}"
        root = state_root_hash or await self.get_state_root_hash()
        result = await self._rpc("state_get_dictionary_item", {
            "state_root_hash": root,
            "dictionary_identifier": {
                "ContractNamedKey": {
                    "key": contract_hash,
                    "dictionary_name": dictionary_name or self._settings.dictionary_name,
                    "dictionary_item_key": item_key,
                }
            },
        })
        return normalize_stored_value(result)

    async def get_account(
        self,
        account: AccountRef,
        state_root_hash: Optional[str] = None,
    ) -> Optional[AccountRecord]:
        """Account record (associated keys, thresholds, named keys)."""
        account_hash = to_account_hash(account)
        root = state_root_hash or await self.get_state_root_hash()
        result = await self._rpc("query_global_state", {
            "state_identifier": {"StateRootHash": root},
            "key": account_hash.display,
            "path": [],
        })
        record = normalize_account(result)
        if record is not None and not record.account_hash:
            record.account_hash = account_hash.display
        return record

    async def get_deploy(self, deploy_hash: str) -> Dict[str, Any]:
        """Raw info_get_deploy record."""
        result = await self._rpc("info_get_deploy", {
            "deploy_hash": deploy_hash,
            "finalized_approvals": False,
        })
        if not isinstance(result, dict):
            raise ResponseFormatError("info_get_deploy returned no record", details={"result": result})
        return result

    async def get_execution_outcome(self, deploy_hash: str) -> ExecutionOutcome:
        return normalize_execution_outcome(await self.get_deploy(deploy_hash))

    # =========================================================================
    # Submission
    # =========================================================================

    async def put_deploy(self, deploy: Deploy) -> str:
        """Submit a signed deploy through the validated path.

        Raises:
            InvalidArgumentError: the deploy carries no approvals
            LedgerHTTPError / RPCError: the node rejected the request
            ResponseFormatError: the result does not match the expected schema
        """
        if not deploy.is_signed:
            raise InvalidArgumentError("Deploy must be signed before submission", field="approvals")

        async with self._chain_logger.operation_context(
            OperationType.DEPLOY_SUBMIT, self.chain_name, deploy_hash=deploy.hash_hex
        ):
            result = await self._rpc("account_put_deploy", {"deploy": deploy.to_json()["deploy"]})
            try:
                validated = PutDeployResult.model_validate(result)
            except ValidationError as e:
                raise ResponseFormatError(
                    "account_put_deploy result failed validation",
                    details={"errors": e.errors(include_url=False)},
                ) from e
            if validated.deploy_hash.lower() != deploy.hash_hex:
                raise ResponseFormatError(
                    "Node acknowledged a different deploy hash",
                    details={"expected": deploy.hash_hex, "actual": validated.deploy_hash},
                )

        self._chain_logger.log_deploy_submitted(
            deploy.hash_hex, self.chain_name, deploy.header.account.hex
        )
        return deploy.hash_hex

    async def submit_deploy_raw(self, deploy_json: Union[str, Mapping[str, Any]]) -> SubmissionResult:
        """Submit a signed deploy document as-is.

        The document is wrapped in a hand-built JSON-RPC envelope and posted
        without client-side schema checks. Transport failures, non-2xx
        statuses, empty or non-JSON bodies and RPC error objects all come
        back as a failed SubmissionResult carrying status code and body text.
        """
        if isinstance(deploy_json, str):
            try:
                deploy_json = json.loads(deploy_json)
            except ValueError as e:
                raise DeployFormatError(f"Deploy is not valid JSON: {e}") from None
        if not isinstance(deploy_json, Mapping):
            raise DeployFormatError("Deploy JSON must be an object")
        body = deploy_json.get("deploy", deploy_json)

        payload = self._envelope("account_put_deploy", {"deploy": body})
        client = await self._get_client()
        start_time = time.time()

        def record(success: bool, code: Optional[int] = None, message: Optional[str] = None) -> None:
            self._chain_logger.log_rpc_call(
                method="account_put_deploy",
                endpoint_url=self.node_url,
                chain=self.chain_name,
                request_id=payload["id"],
                duration_ms=(time.time() - start_time) * 1000,
                success=success,
                error_code=code,
                error_message=message,
            )

        try:
            response = await client.post(
                self.node_url,
                content=json.dumps(payload),
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            record(False, message=str(e))
            logger.warning(f"Deploy submission to {mask_url(self.node_url)} failed: {e}")
            return SubmissionResult(success=False, error=f"Request failed: {e}")

        text = response.text
        if not response.is_success:
            record(False, code=response.status_code, message=response.reason_phrase)
            logger.warning(f"Deploy submission returned HTTP {response.status_code}")
            return SubmissionResult(
                success=False,
                status_code=response.status_code,
                error=f"HTTP {response.status_code} {response.reason_phrase}".strip(),
                body=text,
            )
        if not text.strip():
            record(False, code=response.status_code, message="empty body")
            return SubmissionResult(
                success=False,
                status_code=response.status_code,
                error="Empty response body",
            )
        try:
            decoded = json.loads(text)
        except ValueError:
            record(False, code=response.status_code, message="non-JSON body")
            return SubmissionResult(
                success=False,
                status_code=response.status_code,
                error="Non-JSON response body",
                body=text,
            )

        if isinstance(decoded, dict) and decoded.get("error") is not None:
            error = _rpc_error_from(decoded["error"])
            record(False, code=error.code, message=error.message)
            return SubmissionResult(
                success=False,
                status_code=response.status_code,
                error=error.message,
                body=text,
                rpc_code=error.code,
            )

        try:
            deploy_hash = normalize_submitted_hash(
                decoded.get("result") if isinstance(decoded, dict) else None
            )
        except ResponseFormatError as e:
            record(False, code=response.status_code, message=e.message)
            return SubmissionResult(
                success=False,
                status_code=response.status_code,
                error=e.message,
                body=text,
            )

        record(True)
        header = body.get("header") if isinstance(body, Mapping) else None
        account = header.get("account", "") if isinstance(header, Mapping) else ""
        self._chain_logger.log_deploy_submitted(deploy_hash, self.chain_name, str(account))
        return SubmissionResult(success=True, deploy_hash=deploy_hash, status_code=response.status_code)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def close(self) -> None:
        """Close the HTTP client if this gateway created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None

    async def __aenter__(self) -> "LedgerGateway":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
