"""Chain context resolver over Solana JSON-RPC (getTransaction, getAccountInfo)."""

import asyncio
import base64

import httpx
from loguru import logger
from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from src.parsers.openclaw.constants import SPL_TOKEN_ACCOUNT_SIZE
from src.parsers.openclaw.models import TransactionContext
from src.parsers.rate_limiter import RateLimiter


class ChainContextClient:
    """Async client resolving transaction accounts and token-account mints.

    Every public call is bounded by ``timeout`` seconds in total, retries
    included; on expiry ``TimeoutError`` propagates to the caller.
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout: float = 20.0,
        max_rps: float = 10.0,
        commitment: str = "confirmed",
        rate_limiter: RateLimiter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._rpc_url = rpc_url
        self._timeout = timeout
        self._commitment = commitment
        self._client = httpx.AsyncClient(timeout=min(timeout, 15.0), transport=transport)
        self._rate_limiter = rate_limiter or RateLimiter(max_rps)

    async def _rpc(self, method: str, params: list) -> dict | None:
        await self._rate_limiter.acquire()
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        resp = await self._client.post(self._rpc_url, json=payload)
        resp.raise_for_status()
        data = resp.json()
        if data.get("error"):
            logger.debug(f"[RPC] {method} error: {data['error']}")
            return None
        return data.get("result")

    async def _get_transaction(
        self, signature: str, *, retries: int, initial_delay: float
    ) -> dict | None:
        # logsSubscribe can deliver a signature before the RPC index has it
        delay = initial_delay
        for attempt in range(retries):
            try:
                result = await self._rpc(
                    "getTransaction",
                    [
                        signature,
                        {
                            "encoding": "json",
                            "commitment": self._commitment,
                            "maxSupportedTransactionVersion": 0,
                        },
                    ],
                )
                if result is not None:
                    return result
            except (httpx.HTTPError, ValueError) as e:
                logger.debug(f"[RPC] getTransaction failed for {signature[:16]}: {e}")
            if attempt < retries - 1:
                await asyncio.sleep(delay)
                delay *= 2
        return None

    async def resolve_transaction(
        self, signature: str, *, retries: int = 4, initial_delay: float = 0.5
    ) -> TransactionContext | None:
        """Fee payer and static account keys of a confirmed transaction."""
        result = await asyncio.wait_for(
            self._get_transaction(signature, retries=retries, initial_delay=initial_delay),
            timeout=self._timeout,
        )
        if not result:
            return None
        return transaction_context_from_rpc(signature, result)

    async def resolve_mint_of_token_account(self, account: str) -> str | None:
        """Mint of an SPL token account (first 32 bytes of its data)."""
        try:
            result = await asyncio.wait_for(
                self._rpc(
                    "getAccountInfo",
                    [account, {"encoding": "base64", "commitment": self._commitment}],
                ),
                timeout=self._timeout,
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"[RPC] getAccountInfo failed for {account[:16]}: {e}")
            return None
        if not result or not result.get("value"):
            return None
        return mint_from_token_account_data(result["value"].get("data"))

    async def close(self) -> None:
        await self._client.aclose()


def transaction_context_from_rpc(signature: str, result: dict) -> TransactionContext | None:
    """Build TransactionContext from a getTransaction result (json or jsonParsed)."""
    message = result.get("transaction", {}).get("message", {})
    raw_keys = message.get("accountKeys") or message.get("staticAccountKeys") or []
    keys = [k.get("pubkey", "") if isinstance(k, dict) else k for k in raw_keys]
    if not keys or not keys[0]:
        return None
    return TransactionContext(
        signature=signature,
        fee_payer=keys[0],
        account_keys=keys,
        block_time=result.get("blockTime"),
    )


def mint_from_token_account_data(data: object) -> str | None:
    if isinstance(data, list):
        data = data[0] if data else None
    if not isinstance(data, str):
        return None
    try:
        raw = base64.b64decode(data, validate=True)
    except ValueError:
        return None
    if len(raw) < SPL_TOKEN_ACCOUNT_SIZE:
        return None
    return str(Pubkey.from_bytes(raw[:32]))
