"""Transfer event scanning over block ranges."""
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from holder_ledger.abis import TRANSFER_EVENT
from holder_ledger.config import BURN_ADDRESSES
from holder_ledger.errors import LogRangeTooLarge, ProviderError
from holder_ledger.state import error_entry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transfer:
    token_id: int
    from_address: str
    to_address: str
    block_number: int = 0
    log_index: int = 0


@dataclass
class TransferBatch:
    """Events of one scan, in chain order, burns included."""
    events: List[Transfer] = field(default_factory=list)
    last_block: Optional[int] = None
    errors: list = field(default_factory=list)
    burn_addresses: frozenset = BURN_ADDRESSES

    def is_burn(self, event):
        return event.to_address in self.burn_addresses

    @property
    def burned(self) -> List[int]:
        return [e.token_id for e in self.events if self.is_burn(e)]

    @property
    def transferred(self) -> List[Transfer]:
        return [e for e in self.events if not self.is_burn(e)]


def _topic_hex(topic):
    if isinstance(topic, (bytes, bytearray)):
        return topic.hex()
    return str(topic)


def decode_transfer(log) -> Transfer:
    topics = log["topics"]
    if len(topics) != 4:
        raise ValueError(f"expected 4 topics, got {len(topics)}")
    _, from_t, to_t, id_t = topics
    return Transfer(
        token_id=int(_topic_hex(id_t), 16),
        from_address="0x" + _topic_hex(from_t)[-40:].lower(),
        to_address="0x" + _topic_hex(to_t)[-40:].lower(),
        block_number=int(log.get("blockNumber") or 0),
        log_index=int(log.get("logIndex") or 0),
    )


class EventLogTracker:
    def __init__(self, chain, chunk_size=200, burn_addresses=BURN_ADDRESSES):
        self.chain = chain
        self.chunk_size = max(1, chunk_size)
        self.burn_addresses = frozenset(a.lower() for a in burn_addresses)

    def collect_transfers(self, contract_address, from_block, to_block,
                          on_chunk: Optional[Callable[[int, "TransferBatch"], None]] = None) -> TransferBatch:
        """Scan `[from_block, to_block]` in ascending sub-ranges.

        `on_chunk(last_block, batch)` runs after every sub-range, including ones
        whose failure was recorded in `errors`. A range the provider rejects
        as too large is halved and retried; any other failure skips it.
        """
        batch = TransferBatch(burn_addresses=self.burn_addresses)
        if from_block > to_block:
            return batch

        current = from_block
        chunk = self.chunk_size
        ranges = 0
        while current <= to_block:
            end = min(current + chunk - 1, to_block)
            try:
                logs = self.chain.get_logs(contract_address, TRANSFER_EVENT, current, end)
            except LogRangeTooLarge as e:
                if chunk > 1:
                    old = chunk
                    chunk = max(chunk // 2, 1)
                    logger.warning(f"Log range {current}-{end} too large, reducing block-chunk from {old} to {chunk}")
                    continue
                logger.error(f"Single block {current} exceeds the log response limit: {e}")
                batch.errors.append(error_entry("fetch_events", e, fromBlock=current, toBlock=end))
            except ProviderError as e:
                logger.error(f"Failed to fetch Transfer logs for blocks {current}-{end}: {e}")
                batch.errors.append(error_entry("fetch_events", e, fromBlock=current, toBlock=end))
            else:
                self._add_logs(batch, logs, current, end)
                chunk = min(chunk * 2, self.chunk_size)

            batch.last_block = end
            ranges += 1
            if on_chunk is not None:
                on_chunk(end, batch)
            current = end + 1

        logger.info(
            f"Scanned blocks {from_block}-{to_block} of {contract_address} in {ranges} ranges: "
            f"{len(batch.transferred)} transfers, {len(batch.burned)} burns, {len(batch.errors)} failed ranges"
        )
        return batch

    def _add_logs(self, batch, logs, start, end):
        decoded = []
        for log in logs:
            try:
                decoded.append(decode_transfer(log))
            except (KeyError, TypeError, ValueError) as e:
                batch.errors.append(error_entry("fetch_events", f"undecodable Transfer log: {e}", fromBlock=start, toBlock=end))
        decoded.sort(key=lambda t: (t.block_number, t.log_index))
        batch.events.extend(decoded)
        logger.debug(f"Fetched {len(decoded)} Transfer logs from blocks {start}-{end}")

    def replay_ownership(self, contract_address, from_block, to_block, on_chunk=None):
        """Rebuild `{wallet: [tokenId]}` by replaying every Transfer since `from_block`."""
        batch = self.collect_transfers(contract_address, from_block, to_block, on_chunk=on_chunk)
        token_owner = {}
        burned = 0
        for event in batch.events:
            if event.to_address in self.burn_addresses:
                token_owner.pop(event.token_id, None)
                burned += 1
                continue
            token_owner[event.token_id] = event.to_address

        holders = {}
        for token_id, wallet in token_owner.items():
            holders.setdefault(wallet, []).append(token_id)
        return {wallet: sorted(ids) for wallet, ids in holders.items()}, burned, batch.errors
