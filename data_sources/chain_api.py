"""
Chain data fetchers.

Talks to a JSON gateway in front of a Concordium node's RPC. Endpoints used:

    /consensusInfo          -> {"bestBlockHeight", "lastFinalizedBlockHeight", ...}
    /blocksAtHeight/{h}     -> ["<block hash>", ...]
    /blockInfo/{hash}       -> {"blockBaker", "blockSlotTime", "transactionCount", ...}
    /bakerList              -> [<baker id>, ...]
    /poolInfo/{bakerId}     -> pool status of one baker
    /peersInfo              -> [{"peerId", "ip", "port", "catchupStatus", "isBootstrapper"}, ...]
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from config import (
    CHAIN_API_BASE_URL,
    HTTP_TIMEOUT_SECONDS,
    MAX_BLOCKS_PER_FETCH,
    REQUEST_RETRIES,
    RETRY_DELAY_SECONDS,
    VALIDATOR_CACHE_TTL_SECONDS,
    VALIDATOR_FETCH_CONCURRENCY,
)
from services.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


class ChainRequestError(Exception):
    """A gateway request failed after all retries."""


def make_chain_request(endpoint: str, params: Optional[Dict[str, Any]] = None,
                       base_url: str = CHAIN_API_BASE_URL,
                       timeout: float = HTTP_TIMEOUT_SECONDS) -> Optional[Any]:
    """
    Universal function for requests to the chain gateway.

    Args:
        endpoint: Endpoint without base URL (e.g.: "/consensusInfo")
        params: Request parameters

    Returns:
        Decoded JSON or None on error
    """
    url = f"{base_url}{endpoint}"

    for attempt in range(REQUEST_RETRIES):
        try:
            response = requests.get(url, params=params, timeout=timeout)
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Error fetching {url}: {e}")
            if attempt < REQUEST_RETRIES - 1:
                logger.info(f"Retrying in {RETRY_DELAY_SECONDS} seconds...")
                time.sleep(RETRY_DELAY_SECONDS)
            else:
                logger.error(f"Max retries reached for {url}")
    return None


def _request_or_raise(endpoint: str, base_url: str, timeout: float) -> Any:
    data = make_chain_request(endpoint, base_url=base_url, timeout=timeout)
    if data is None:
        raise ChainRequestError(f"Request to {endpoint} failed")
    return data


def parse_slot_time(value) -> int:
    """Block slot time as epoch ms. Accepts epoch ms or an ISO-8601 string."""
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        if value.isdigit():
            return int(value)
        return int(datetime.fromisoformat(value.replace('Z', '+00:00')).timestamp() * 1000)
    raise ValueError(f"Unsupported blockSlotTime: {value!r}")


# --- Blocks ---

@dataclass
class ChainBlock:
    height: int
    hash: str
    baker_id: int
    timestamp: int
    transaction_count: int = 0


@dataclass
class FetchBlocksResult:
    blocks: List[ChainBlock]
    latest_height: int
    from_height: int
    errors: List[str] = field(default_factory=list)


class BlockFetcher:
    """Fetches finalized block data (baker, slot time, transaction count) from the chain."""

    def __init__(self, base_url: str = CHAIN_API_BASE_URL, timeout: float = HTTP_TIMEOUT_SECONDS,
                 max_blocks_per_fetch: int = MAX_BLOCKS_PER_FETCH):
        self.base_url = base_url
        self.timeout = timeout
        self.max_blocks_per_fetch = max_blocks_per_fetch

    # Gateway calls are isolated so tests can override them
    def _fetch_consensus_info(self) -> Dict[str, Any]:
        return _request_or_raise("/consensusInfo", self.base_url, self.timeout)

    def _fetch_block_hashes_at_height(self, height: int) -> List[str]:
        return _request_or_raise(f"/blocksAtHeight/{height}", self.base_url, self.timeout)

    def _fetch_block_info(self, block_hash: str) -> Dict[str, Any]:
        return _request_or_raise(f"/blockInfo/{block_hash}", self.base_url, self.timeout)

    def get_latest_block_height(self) -> Optional[int]:
        """Best block height from consensus info, None if the chain is unreachable."""
        try:
            info = self._fetch_consensus_info()
            return int(info["bestBlockHeight"])
        except (ChainRequestError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Failed to get latest block height: {e}")
            return None

    def get_block_info_at_height(self, height: int) -> Optional[ChainBlock]:
        """
        Block at a height, or None for blocks without a baker (genesis/special blocks).

        Raises:
            ChainRequestError: the gateway failed for this height
        """
        hashes = self._fetch_block_hashes_at_height(height)
        if not hashes:
            return None
        block_hash = str(hashes[0])

        info = self._fetch_block_info(block_hash)
        if not info:
            return None

        baker = info.get("blockBaker")
        if baker is None:
            return None

        return ChainBlock(
            height=height,
            hash=block_hash,
            baker_id=int(baker),
            timestamp=parse_slot_time(info.get("blockSlotTime")),
            transaction_count=int(info.get("transactionCount") or 0),
        )

    def fetch_blocks_since(self, from_height: int, deadline: Optional[float] = None) -> FetchBlocksResult:
        """
        Fetch blocks from from_height + 1 up to the chain head, capped at
        max_blocks_per_fetch. deadline is a time.monotonic() value; heights not
        reached before it are left for the next cycle.
        """
        errors: List[str] = []

        latest_height = self.get_latest_block_height()
        if latest_height is None:
            return FetchBlocksResult([], from_height, from_height, ["Failed to get latest block height"])

        if latest_height <= from_height:
            return FetchBlocksResult([], latest_height, from_height, [])

        start_height = from_height + 1
        end_height = min(latest_height, start_height + self.max_blocks_per_fetch - 1)
        if end_height < latest_height:
            errors.append(f"Limited to {self.max_blocks_per_fetch} blocks. More blocks available.")

        blocks: List[ChainBlock] = []
        for height in range(start_height, end_height + 1):
            if deadline is not None and time.monotonic() >= deadline:
                errors.append(f"Fetch budget exhausted at height {height}")
                logger.warning(f"Block fetch budget exhausted at height {height}")
                break
            try:
                block = self.get_block_info_at_height(height)
            except (ChainRequestError, KeyError, TypeError, ValueError) as e:
                # Don't fail the whole range for one block
                errors.append(f"Block {height}: {e}")
                logger.warning(f"Error fetching block {height}: {e}")
                continue
            if block:
                blocks.append(block)

        return FetchBlocksResult(blocks, latest_height, start_height, errors)


# --- Validators ---

@dataclass
class ChainValidator:
    baker_id: int
    account_address: str
    equity_capital: int
    delegated_capital: int
    total_stake: int
    lottery_power: float
    open_status: str
    commission_baking: float
    commission_finalization: float
    commission_transaction: float
    in_current_payday: bool
    effective_stake: int


@dataclass
class ValidatorFetchResult:
    validators: List[ChainValidator]
    total_network_stake: int
    errors: List[str]
    fetched_at: float


DEFAULT_COMMISSION_PARTS = 10000  # 10%


def _amount(value) -> int:
    """microCCD amount; the gateway may send it as a number, a string or {"value": ...}."""
    if isinstance(value, dict):
        value = value.get("value")
    if value is None:
        return 0
    return int(value)


def _commission(value) -> float:
    """Commission rate from parts per hundred thousand."""
    if isinstance(value, dict):
        value = value.get("partsPerHundredThousand")
    if value is None:
        value = DEFAULT_COMMISSION_PARTS
    return int(value) / 100000


def transform_pool_info(baker_id: int, pool_info: Dict[str, Any]) -> ChainValidator:
    """Normalize a raw poolInfo response. Lottery power is filled in later, once total stake is known."""
    equity_capital = _amount(pool_info.get("equityCapital"))
    delegated_capital = _amount(pool_info.get("delegatedCapital"))
    total_stake = equity_capital + delegated_capital

    details = pool_info.get("poolInfo") or {}
    rates = details.get("commissionRates") or {}
    open_status = details.get("openStatus") or "openForAll"
    if isinstance(open_status, dict):
        open_status = open_status.get("tag", "openForAll")

    payday = pool_info.get("currentPaydayInfo")
    effective_stake = _amount(payday.get("effectiveStake")) if payday else total_stake

    return ChainValidator(
        baker_id=baker_id,
        account_address=str(pool_info.get("address") or ""),
        equity_capital=equity_capital,
        delegated_capital=delegated_capital,
        total_stake=total_stake,
        lottery_power=0.0,
        open_status=open_status,
        commission_baking=_commission(rates.get("baking")),
        commission_finalization=_commission(rates.get("finalization")),
        commission_transaction=_commission(rates.get("transaction")),
        in_current_payday=payday is not None,
        effective_stake=effective_stake,
    )


class ValidatorFetcher:
    """Fetches the full validator registry: baker list plus pool info for each baker."""

    def __init__(self, base_url: str = CHAIN_API_BASE_URL, timeout: float = HTTP_TIMEOUT_SECONDS,
                 concurrency_limit: int = VALIDATOR_FETCH_CONCURRENCY,
                 cache_ttl_seconds: float = VALIDATOR_CACHE_TTL_SECONDS):
        self.base_url = base_url
        self.timeout = timeout
        self.concurrency_limit = max(1, concurrency_limit)
        self.cache_ttl_seconds = cache_ttl_seconds
        self._cache: Optional[ValidatorFetchResult] = None
        self._cache_time = 0.0

    def _fetch_baker_list(self) -> List[int]:
        data = _request_or_raise("/bakerList", self.base_url, self.timeout)
        return [int(b["value"]) if isinstance(b, dict) else int(b) for b in data]

    def _fetch_pool_info(self, baker_id: int) -> Dict[str, Any]:
        return _request_or_raise(f"/poolInfo/{baker_id}", self.base_url, self.timeout)

    def _cache_valid(self) -> bool:
        return self._cache is not None and time.monotonic() - self._cache_time < self.cache_ttl_seconds

    def fetch_all_validators(self, force_refresh: bool = False,
                             deadline: Optional[float] = None) -> ValidatorFetchResult:
        """
        Fetch every registered validator.

        Per-baker failures are collected in errors (partial fetch). deadline is
        a time.monotonic() value; a registry that is not complete by then is
        discarded, since lottery power needs every baker's stake.

        Raises:
            UpstreamUnavailable: the baker list itself could not be fetched,
                or the deadline passed before every pool was fetched
        """
        if not force_refresh and self._cache_valid():
            logger.info("Using cached validator registry")
            return self._cache

        try:
            baker_ids = self._fetch_baker_list()
        except (ChainRequestError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Failed to fetch baker list: {e}")
            raise UpstreamUnavailable(f"Failed to fetch baker list: {e}")

        logger.info(f"Fetching pool info for {len(baker_ids)} bakers with {self.concurrency_limit} threads")
        errors: List[str] = []
        validators: List[ChainValidator] = []

        timeout = None
        if deadline is not None:
            timeout = max(0.0, deadline - time.monotonic())

        executor = ThreadPoolExecutor(max_workers=self.concurrency_limit)
        try:
            future_to_baker = {
                executor.submit(self._fetch_pool_info, baker_id): baker_id
                for baker_id in baker_ids
            }
            for future in as_completed(future_to_baker, timeout=timeout):
                baker_id = future_to_baker[future]
                try:
                    validators.append(transform_pool_info(baker_id, future.result()))
                except (ChainRequestError, KeyError, TypeError, ValueError) as e:
                    errors.append(f"Baker {baker_id}: {e}")
        except FuturesTimeoutError:
            logger.error(f"Validator fetch budget exhausted after {len(validators) + len(errors)} "
                         f"of {len(baker_ids)} bakers")
            raise UpstreamUnavailable("Fetching validators exceeded the job budget")
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        validators.sort(key=lambda v: v.baker_id)
        total_network_stake = sum(v.total_stake for v in validators)
        if total_network_stake > 0:
            for v in validators:
                v.lottery_power = v.total_stake / total_network_stake

        if errors:
            logger.warning(f"Validator fetch finished with {len(errors)} errors")

        result = ValidatorFetchResult(
            validators=validators,
            total_network_stake=total_network_stake,
            errors=errors,
            fetched_at=time.time(),
        )
        self._cache = result
        self._cache_time = time.monotonic()
        return result


# --- Peers ---

@dataclass
class ChainPeer:
    peer_id: str
    ip_address: Optional[str] = None
    port: Optional[int] = None
    catchup_status: Optional[str] = None
    is_bootstrapper: bool = False


def fetch_peers_info(base_url: str = CHAIN_API_BASE_URL, timeout: float = HTTP_TIMEOUT_SECONDS) -> List[ChainPeer]:
    """
    Peers the gateway's node is connected to.

    Raises:
        ChainRequestError: the gateway request failed
    """
    data = _request_or_raise("/peersInfo", base_url, timeout)
    peers = []
    for raw in data:
        peer_id = raw.get("peerId")
        if not peer_id:
            continue
        port = raw.get("port")
        peers.append(ChainPeer(
            peer_id=str(peer_id),
            ip_address=raw.get("ip"),
            port=int(port) if port is not None else None,
            catchup_status=raw.get("catchupStatus"),
            is_bootstrapper=bool(raw.get("isBootstrapper", False)),
        ))
    return peers
