"""Full / incremental holder synchronization, one run per contract at a time."""
import logging
import threading
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Optional

from supabase import create_client
from web3 import Web3

from holder_ledger.chain import Call, ChainReader
from holder_ledger.config import BURN_ADDRESSES
from holder_ledger.errors import ConfigurationError, OwnerFetchError
from holder_ledger.events import EventLogTracker, Transfer
from holder_ledger.ledger import Ledger, LedgerBuilder, is_valid_ledger
from holder_ledger.owners import OwnerDirectory
from holder_ledger.profiles import PROFILES
from holder_ledger.resolvers import TierResolver
from holder_ledger.retry import Retrier
from holder_ledger.state import ProgressState, SyncStep
from holder_ledger.store import CacheStore

logger = logging.getLogger(__name__)


class StalePolicy:
    """Liveness heuristic for a lock left behind by a crashed run.

    A held lock whose progress has not moved for `stale_after` seconds is
    treated as abandoned. A run that is merely slower than that can end up
    interleaved with a new one; there is no lease or owner token.
    """

    def __init__(self, stale_after=600.0):
        self.stale_after = stale_after

    def is_stale(self, state, at_ms):
        if not state.is_populating:
            return False
        last = state.progress.last_updated
        if not last:
            return True
        return at_ms - last > self.stale_after * 1000


@dataclass
class SyncResult:
    status: str
    holders: list = field(default_factory=list)
    total_burned: int = 0
    last_block: Optional[int] = None
    error_log: list = field(default_factory=list)
    global_metrics: dict = field(default_factory=dict)


def _transfer_to_dict(t):
    return {"tokenId": t.token_id, "from": t.from_address, "to": t.to_address,
            "blockNumber": t.block_number, "logIndex": t.log_index}


def _transfer_from_dict(d):
    return Transfer(int(d["tokenId"]), d["from"], d["to"], int(d.get("blockNumber", 0)), int(d.get("logIndex", 0)))


class Synchronizer:
    def __init__(self, profile, chain, owners, events, tiers, store, rewards=None,
                 stale_policy=None, clock=time.time):
        self.profile = profile
        self.key = profile.key
        self.chain = chain
        self.owners = owners
        self.events = events
        self.tiers = tiers
        self.store = store
        self.rewards = rewards
        self.stale_policy = stale_policy or StalePolicy()
        self.clock = clock
        self.builder = LedgerBuilder(profile)
        self._lock = threading.Lock()

    @property
    def holders_key(self):
        return f"{self.key}_holders"

    @property
    def journal_key(self):
        return f"{self.key}_pending_events"

    def _now_ms(self):
        return int(self.clock() * 1000)

    def holds_live_lock(self, state):
        return state.is_populating and not self.stale_policy.is_stale(state, self._now_ms())

    # ─── STATE ──────────────────────────────────────────────────────
    def _save(self, state):
        if not self.store.save_state(self.key, state):
            logger.warning(f"{self.key}: state persisted in degraded mode")

    def _step(self, state, step, **counters):
        state.progress.step = step.value
        for name, value in counters.items():
            setattr(state.progress, name, value)
        state.touch()
        self._save(state)
        logger.info(f"{self.key}: step={step.value} progress={state.progress.percentage}")

    def _finish(self, state, status, block):
        state.is_populating = False
        state.last_processed_block = block
        state.progress.step = SyncStep.COMPLETED.value
        state.progress.error = None
        state.touch()
        self._save(state)
        logger.info(f"{self.key}: synchronization {status} at block {block}")

    # ─── ENTRY POINT ────────────────────────────────────────────────
    def populate_holders_map_cache(self, force_update=False, wallet=None) -> SyncResult:
        """Bring `{contract}_holders` up to date with the chain head.

        Returns `pending` without touching the chain when another run holds
        the lock. Any failure is persisted as the `failed` step, the lock is
        released, and the exception propagates.
        """
        with self._lock:
            state = self.store.load_state(self.key)
            if self.stale_policy.is_stale(state, self._now_ms()):
                logger.warning(f"Detected stale isPopulating flag for {self.key}, resetting")
                state.is_populating = False
                state.progress.error = "Reset due to stale state"
                self._save(state)
            if state.is_populating and not force_update:
                logger.info(f"Cache population already in progress for {self.key}")
                return SyncResult("pending")

            state.is_populating = True
            state.progress = ProgressState(step=SyncStep.STARTING.value, error_log=state.progress.error_log)
            state.touch()
            self._save(state)

        try:
            self.profile.validate()
            cached = self.store.get(self.holders_key)
            if (is_valid_ledger(cached) and not force_update and wallet is None
                    and state.last_processed_block is not None):
                return self._incremental(state, Ledger.from_dict(cached))
            return self._full(state, wallet)
        except Exception as e:
            logger.error(f"Failed to populate holders map for {self.key} during {state.progress.step}: {e}")
            state.record_error(state.progress.step, e)
            state.is_populating = False
            state.progress.step = SyncStep.FAILED.value
            state.progress.error = str(e)
            state.touch()
            self._save(state)
            raise

    # ─── FULL REBUILD ───────────────────────────────────────────────
    def _full(self, state, wallet):
        profile = self.profile
        self._step(state, SyncStep.FETCHING_SUPPLY)
        head = self.chain.block_number()
        supply = self.chain.read_view(profile.address, profile.supply_function)
        total_burned = self.chain.read_view(profile.address, profile.burned_function) if profile.burned_function else None
        pools = None
        if self.rewards is not None:
            pools = self.rewards.resolve_pools()
            state.extend_errors(self.rewards.anomalies)
        logger.info(f"{self.key}: block={head} supply={supply} burned={total_burned}")

        self._step(state, SyncStep.FETCHING_HOLDERS, total_nfts=int(supply))
        owner_map = self._fetch_owners(state, head)

        self._step(state, SyncStep.VERIFYING_OWNERSHIP)
        owner_map, burned_after_head = self._verify_owners(state, owner_map)
        token_ids = sorted(t for ids in owner_map.values() for t in ids)
        if total_burned is None:
            # burns seen by ownerOf happened after `head`; the next run replays their events
            total_burned = max(int(supply) - len(token_ids) - burned_after_head, 0)

        self._step(state, SyncStep.FETCHING_TIERS, total_tiers=len(token_ids), processed_tiers=0)
        tier_map = self._resolve_tiers(state, token_ids)

        reward_map = None
        if self.rewards is not None:
            self._step(state, SyncStep.FETCHING_REWARDS)
            reward_map = self.rewards.resolve_many(owner_map)
            state.extend_errors(self.rewards.anomalies)

        self._step(state, SyncStep.BUILDING_HOLDERS)
        ledger = self.builder.build_full(owner_map, tier_map, reward_map, int(total_burned), pools,
                                         timestamp=self._now_ms())
        self._persist(state, ledger, pools, len(ledger.unresolved))
        self.store.delete(self.journal_key)
        state.total_owners = len(owner_map)
        self._finish(state, "completed", head)

        holders = ledger.holders
        if wallet:
            holders = [h for h in holders if h.wallet == wallet.lower()]
        return SyncResult("completed", holders, ledger.total_burned, head,
                          list(state.progress.error_log), dict(state.global_metrics))

    def _fetch_owners(self, state, head):
        address = self.profile.address
        if self.owners is not None:
            try:
                owner_map = self.owners.list_owners(address)
                state.extend_errors(self.owners.anomalies)
                return owner_map
            except OwnerFetchError as e:
                state.record_error("fetching_holders", e)
                logger.warning(f"{self.key}: owner directory failed, replaying Transfer events instead: {e}")

        def checkpoint(block, batch):
            state.progress.processed_nfts = len(batch.events)
            state.touch()
            self._save(state)

        owner_map, burned, errors = self.events.replay_ownership(
            address, self.profile.deployment_block, head, on_chunk=checkpoint)
        state.extend_errors(errors)
        logger.info(f"{self.key}: replayed ownership of {sum(map(len, owner_map.values()))} tokens, {burned} burns")
        return owner_map

    def _verify_owners(self, state, owner_map):
        """Check the snapshot against `ownerOf`; the chain wins.

        Returns the verified owner map and the number of listed tokens that
        `ownerOf` reports as burned.
        """
        claimed = {t: w for w, ids in owner_map.items() for t in ids}
        token_ids = sorted(claimed)
        verified = defaultdict(list)
        chunk = self.profile.max_tokens_per_owner_query
        burned = mismatched = 0

        for start in range(0, len(token_ids), chunk):
            part = token_ids[start:start + chunk]
            results = self.chain.multicall([Call(self.profile.address, "ownerOf", (t,)) for t in part])
            for token_id, result in zip(part, results):
                if not result.ok:
                    state.record_error("verifying_ownership", result.error, tokenId=token_id)
                    verified[claimed[token_id]].append(token_id)
                    continue
                actual = str(result.value).lower()
                if actual in BURN_ADDRESSES:
                    burned += 1
                    continue
                if actual != claimed[token_id]:
                    mismatched += 1
                    logger.debug(f"{self.key}: token {token_id} listed for {claimed[token_id]}, owned by {actual}")
                verified[actual].append(token_id)
            state.progress.processed_nfts = min(start + chunk, len(token_ids))
            state.touch()
            self._save(state)

        if burned or mismatched:
            logger.warning(f"{self.key}: ownership check dropped {burned} burned tokens, corrected {mismatched} owners")
        return {w: sorted(ids) for w, ids in verified.items()}, burned

    def _resolve_tiers(self, state, token_ids, invalidate=()):
        def progress(done, total):
            state.progress.processed_tiers = done
            state.progress.total_tiers = total
            state.touch()
            self._save(state)

        tier_map = self.tiers.resolve_tiers(token_ids, invalidate=invalidate, on_progress=progress)
        state.extend_errors(self.tiers.anomalies)
        return tier_map

    def _rarity_distribution(self, ledger):
        if not self.profile.rarity_classes:
            return None
        counts = [0] * self.profile.rarity_classes
        token_ids = [t for h in ledger.holders for t in h.token_ids]
        for rarity in self.tiers.rarity_classes(token_ids).values():
            if 0 <= rarity < len(counts):
                counts[rarity] += 1
        return counts

    def _persist(self, state, ledger, pools, unresolved):
        if not self.store.set(self.holders_key, ledger.to_dict()):
            state.record_error("persist", f"{self.holders_key} written in degraded mode")
        state.total_live_holders = len(ledger.holders)
        state.global_metrics = self.builder.summarize(ledger, pools, unresolved, self._rarity_distribution(ledger))

    # ─── INCREMENTAL ────────────────────────────────────────────────
    def _incremental(self, state, ledger):
        self._step(state, SyncStep.FETCHING_HOLDERS)
        head = self.chain.block_number()
        start = state.last_processed_block + 1
        pending = self._load_journal(ledger)
        if start > head and not pending:
            self._finish(state, "up_to_date", state.last_processed_block)
            return self._result("up_to_date", ledger, state)

        def checkpoint(block, batch):
            self.store.set(self.journal_key, {
                "ledgerTimestamp": ledger.timestamp,
                "events": [_transfer_to_dict(t) for t in pending + batch.events],
            })
            state.last_processed_block = block
            state.touch()
            self._save(state)

        batch = self.events.collect_transfers(self.profile.address, start, head, on_chunk=checkpoint)
        state.extend_errors(batch.errors)
        events = pending + batch.events
        if not events:
            self._finish(state, "up_to_date", max(head, state.last_processed_block))
            return self._result("up_to_date", ledger, state)

        self._step(state, SyncStep.VERIFYING_OWNERSHIP, total_nfts=len({e.token_id for e in events}))
        burns = [e.token_id for e in events if e.to_address in BURN_ADDRESSES]
        transfers = [e for e in events if e.to_address not in BURN_ADDRESSES]
        burns, transfers = self._verify_events(state, ledger, burns, transfers, head)

        holdings = self._holdings_after(ledger, burns, transfers)
        token_ids = sorted(t for ids in holdings.values() for t in ids)
        self._step(state, SyncStep.FETCHING_TIERS, total_tiers=len(token_ids), processed_tiers=0)
        tier_map = self._resolve_tiers(state, token_ids)

        reward_map = pools = None
        if self.rewards is not None:
            self._step(state, SyncStep.FETCHING_REWARDS)
            pools = self.rewards.resolve_pools()
            reward_map = self.rewards.resolve_many({w: ids for w, ids in holdings.items() if ids})
            state.extend_errors(self.rewards.anomalies)

        self._step(state, SyncStep.BUILDING_HOLDERS)
        updated = self.builder.apply_incremental(ledger, burns, transfers, tier_map, reward_map, pools,
                                                 timestamp=self._now_ms())
        unresolved = state.global_metrics.get("unresolvedTokens", 0) + len(updated.unresolved)
        self._persist(state, updated, pools, unresolved)
        self.store.delete(self.journal_key)
        self._finish(state, "updated", max(head, state.last_processed_block))
        logger.info(f"{self.key}: {len(transfers)} transfers, {len(burns)} burns applied")
        return self._result("updated", updated, state)

    def _result(self, status, ledger, state):
        return SyncResult(status, ledger.holders, ledger.total_burned, state.last_processed_block,
                          list(state.progress.error_log), dict(state.global_metrics))

    def _load_journal(self, ledger):
        journal = self.store.get(self.journal_key)
        if not isinstance(journal, dict) or journal.get("ledgerTimestamp") != ledger.timestamp:
            return []
        try:
            events = [_transfer_from_dict(d) for d in journal.get("events", [])]
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"{self.key}: discarding unreadable event journal: {e}")
            return []
        logger.info(f"{self.key}: resuming with {len(events)} journaled events")
        return events

    def _verify_events(self, state, ledger, burns, transfers, head):
        """Reconcile replayed ownership of touched tokens with `ownerOf`."""
        final = {t: w for w, ids in ledger.owner_map().items() for t in ids}
        for transfer in sorted(transfers, key=lambda t: (t.block_number, t.log_index)):
            final[transfer.token_id] = transfer.to_address
        burned = set(burns)
        touched = sorted({t.token_id for t in transfers} | burned)

        results = self.chain.multicall([Call(self.profile.address, "ownerOf", (t,)) for t in touched])
        burns, transfers = list(burns), list(transfers)
        for token_id, result in zip(touched, results):
            if not result.ok:
                if token_id not in burned:
                    state.record_error("verifying_ownership", result.error, tokenId=token_id)
                continue
            actual = str(result.value).lower()
            if actual in BURN_ADDRESSES:
                if token_id not in burned:
                    logger.warning(f"{self.key}: token {token_id} burned without a matching event")
                    burns.append(token_id)
                    burned.add(token_id)
            elif token_id not in burned and final.get(token_id) != actual:
                logger.warning(f"{self.key}: token {token_id} replayed to {final.get(token_id)}, owned by {actual}")
                transfers.append(Transfer(token_id, final.get(token_id) or "", actual, head + 1, 0))
        state.progress.processed_nfts = len(touched)
        return burns, transfers

    def _holdings_after(self, ledger, burns, transfers):
        """Complete token lists of every wallet the diff touches, after the diff."""
        holdings = {h.wallet: set(h.token_ids) for h in ledger.holders}
        owner = {t: h.wallet for h in ledger.holders for t in h.token_ids}
        touched = set()
        for transfer in sorted(transfers, key=lambda t: (t.block_number, t.log_index)):
            sender = owner.get(transfer.token_id)
            if sender is not None:
                holdings[sender].discard(transfer.token_id)
                touched.add(sender)
            owner[transfer.token_id] = transfer.to_address
            holdings.setdefault(transfer.to_address, set()).add(transfer.token_id)
            touched.add(transfer.to_address)
        for token_id in burns:
            sender = owner.pop(token_id, None)
            if sender is not None:
                holdings[sender].discard(token_id)
                touched.add(sender)
        return {w: sorted(holdings.get(w, ())) for w in touched}


class SyncService:
    """One Synchronizer per contract; runs them on a small worker pool."""

    def __init__(self, synchronizers, store, max_workers=2):
        self.synchronizers = synchronizers
        self.store = store
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="holder-sync")
        self._runs = {}
        self._lock = threading.Lock()

    def synchronizer(self, key) -> Synchronizer:
        sync = self.synchronizers.get((key or "").lower())
        if sync is None:
            raise ConfigurationError(f"Unknown or disabled contract: {key}")
        return sync

    def is_running(self, key):
        with self._lock:
            future = self._runs.get(key)
            return future is not None and not future.done()

    def trigger(self, key, force_update=False, wait=None, wallet=None) -> SyncResult:
        """Start (or join) a run and wait up to `wait` seconds for it."""
        sync = self.synchronizer(key)
        with self._lock:
            future = self._runs.get(sync.key)
            if future is None or future.done() or force_update:
                future = self._pool.submit(sync.populate_holders_map_cache, force_update, wallet)
                self._runs[sync.key] = future
        try:
            return future.result(timeout=wait)
        except FutureTimeout:
            return SyncResult("in_progress")

    def shutdown(self):
        self._pool.shutdown(wait=False)


def build_service(settings, store=None, w3=None, remote=None):
    """Wire the production components for every enabled profile."""
    if w3 is None:
        if not settings.rpc_url:
            raise ConfigurationError("RPC_URL is required")
        w3 = Web3(Web3.HTTPProvider(settings.rpc_url, request_kwargs={"timeout": settings.call_timeout}))
    if store is None:
        if remote is None and settings.remote_cache_enabled:
            remote = create_client(settings.supabase_url, settings.supabase_key)
        store = CacheStore(settings.cache_dir, remote=remote, table=settings.cache_table)

    retrier = Retrier.from_settings(settings)
    chain = ChainReader(w3, retrier, settings.multicall_batch_size, settings.multicall_concurrency)
    owners = None
    if settings.alchemy_api_key:
        owners = OwnerDirectory(settings.alchemy_api_key, settings.alchemy_network, retrier,
                                settings.owner_max_pages, timeout=settings.call_timeout)
    else:
        logger.warning("ALCHEMY_API_KEY not set, full rebuilds will replay Transfer events")
    events = EventLogTracker(chain, settings.log_chunk_size)
    stale = StalePolicy(settings.stale_after_minutes * 60)

    synchronizers = {}
    for key, profile in PROFILES.items():
        if profile.disabled:
            continue
        chain.register(profile.address, profile.abi)
        rewards = profile.reward_resolver(profile, chain) if profile.reward_resolver else None
        tiers = TierResolver(profile, chain, store, settings.tier_cache_ttl)
        synchronizers[key] = Synchronizer(profile, chain, owners, events, tiers, store, rewards, stale)
    return SyncService(synchronizers, store)
