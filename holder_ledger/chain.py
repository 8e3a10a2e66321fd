"""Read-only chain access: view calls, Transfer logs and Multicall3 batches."""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from eth_abi import decode
from web3 import Web3
from web3.exceptions import ContractLogicError

from holder_ledger.abis import MULTICALL3_ABI, MULTICALL3_ADDRESS, find_function
from holder_ledger.errors import ConfigurationError, LogRangeTooLarge, ProviderError

logger = logging.getLogger(__name__)

# Provider messages meaning "split the block range and ask again".
RANGE_TOO_LARGE_HINTS = (
    "log response size exceeded",
    "query returned more than",
    "more than 10000 results",
    "response size",
    "block range",
)


@dataclass(frozen=True)
class Call:
    address: str
    function_name: str
    args: tuple = ()


@dataclass
class CallResult:
    status: str
    value: Any = None
    error: Optional[str] = None

    @property
    def ok(self):
        return self.status == "success"

    @classmethod
    def success(cls, value):
        return cls("success", value=value)

    @classmethod
    def failure(cls, error):
        return cls("failure", error=str(error))


def _abi_type(param):
    kind = param["type"]
    if kind.startswith("tuple"):
        inner = ",".join(_abi_type(c) for c in param["components"])
        return f"({inner}){kind[len('tuple'):]}"
    return kind


def transfer_topic(event_signature):
    return Web3.to_hex(Web3.keccak(text=event_signature))


class ChainReader:
    def __init__(self, w3, retrier, batch_size=50, concurrency=2, multicall_address=MULTICALL3_ADDRESS):
        self.w3 = w3
        self.retrier = retrier
        self.batch_size = batch_size
        self.concurrency = concurrency
        self._contracts = {}
        self._abis = {}
        self._multicall = w3.eth.contract(address=Web3.to_checksum_address(multicall_address), abi=MULTICALL3_ABI)

    def register(self, address, abi):
        checksum = Web3.to_checksum_address(address)
        self._contracts[checksum.lower()] = self.w3.eth.contract(address=checksum, abi=abi)
        self._abis[checksum.lower()] = abi

    def contract(self, address):
        contract = self._contracts.get(address.lower())
        if contract is None:
            raise ConfigurationError(f"No ABI registered for {address}")
        return contract

    def block_number(self) -> int:
        return self.retrier.execute(lambda: self.w3.eth.block_number, label="eth_blockNumber")

    def read_view(self, address, function_name, args=()):
        fn = getattr(self.contract(address).functions, function_name)
        return self.retrier.execute(lambda: fn(*args).call(), label=function_name)

    def get_logs(self, address, event_signature, from_block, to_block) -> List[dict]:
        params = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": Web3.to_checksum_address(address),
            "topics": [transfer_topic(event_signature)],
        }

        def fetch():
            try:
                return self.w3.eth.get_logs(params)
            except Exception as e:
                msg = str(e).lower()
                if any(hint in msg for hint in RANGE_TOO_LARGE_HINTS):
                    raise LogRangeTooLarge(str(e)) from e
                raise

        return self.retrier.execute(fetch, label=f"eth_getLogs[{from_block}-{to_block}]")

    def multicall(self, calls: Sequence[Call], batch_size=None) -> List[CallResult]:
        """Run `calls` through Multicall3 with allowFailure semantics.

        One result per call, in call order. A failing call, or a whole batch
        that still fails after retries, yields failure results and never
        aborts the other batches.
        """
        if not calls:
            return []
        size = batch_size or self.batch_size
        batches = [list(calls[i:i + size]) for i in range(0, len(calls), size)]
        with ThreadPoolExecutor(max_workers=max(1, self.concurrency), thread_name_prefix="multicall") as pool:
            results = list(pool.map(self._run_batch, batches))
        return [result for batch in results for result in batch]

    def _run_batch(self, batch):
        results = [None] * len(batch)
        encoded, positions = [], []
        for i, call in enumerate(batch):
            try:
                contract = self.contract(call.address)
                data = contract.encode_abi(call.function_name, args=list(call.args))
            except ConfigurationError:
                raise
            except Exception as e:
                results[i] = CallResult.failure(f"encode {call.function_name}: {e}")
                continue
            encoded.append((contract.address, True, Web3.to_bytes(hexstr=data)))
            positions.append(i)

        if encoded:
            # one aggregate3 request is one unit of the rate budget, whatever its size
            try:
                raw = self.retrier.execute(
                    lambda: self._multicall.functions.aggregate3(encoded).call(),
                    cost=1,
                    label=f"multicall[{len(encoded)}]",
                )
            except (ProviderError, ContractLogicError) as e:
                logger.error(f"Multicall batch of {len(encoded)} calls failed: {e}")
                for i in positions:
                    results[i] = CallResult.failure(e)
            else:
                for i, (success, data) in zip(positions, raw):
                    results[i] = self._decode(batch[i], success, data)
        return results

    def _decode(self, call, success, data):
        if not success:
            return CallResult.failure(f"{call.function_name}({', '.join(map(str, call.args))}) reverted")
        if not data:
            return CallResult.failure(f"{call.function_name}: empty return data")
        fn_abi = find_function(self._abis[call.address.lower()], call.function_name)
        types = [_abi_type(o) for o in fn_abi["outputs"]]
        try:
            values = decode(types, bytes(data))
        except Exception as e:
            return CallResult.failure(f"{call.function_name}: undecodable return data: {e}")
        return CallResult.success(values[0] if len(values) == 1 else tuple(values))
