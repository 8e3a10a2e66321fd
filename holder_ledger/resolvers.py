"""Per-token tier lookup and share/reward reads for yield collections."""
import logging
import time
from dataclasses import dataclass

from web3 import Web3

from holder_ledger.chain import Call
from holder_ledger.errors import DataError
from holder_ledger.state import error_entry

logger = logging.getLogger(__name__)


class TierResolver:
    """Resolves `tokenId -> tier` through a long-lived tier cache.

    Tiers never change after mint, so only tokens missing from
    `{contract}_tiers` (or explicitly invalidated) are read on chain.
    A tier of 0 marks a token whose tier could not be established.
    """

    def __init__(self, profile, chain, store, ttl=86400, clock=time.time):
        self.profile = profile
        self.chain = chain
        self.store = store
        self.ttl = ttl
        self.clock = clock
        self.anomalies = []

    @property
    def cache_key(self):
        return f"{self.profile.key}_tiers"

    def _load_cache(self):
        cache = self.store.get(self.cache_key)
        return cache if isinstance(cache, dict) else {}

    def _fresh(self, entry, now_ms):
        if not self.ttl:
            return True
        stamp = entry.get("timestamp")
        return isinstance(stamp, (int, float)) and now_ms - stamp < self.ttl * 1000

    def resolve_tiers(self, token_ids, invalidate=(), on_progress=None):
        self.anomalies = []
        cache = self._load_cache()
        now_ms = int(self.clock() * 1000)
        invalid = set(invalidate)
        tiers, missing = {}, []

        for token_id in sorted(set(token_ids)):
            entry = cache.get(str(token_id))
            if (token_id not in invalid and isinstance(entry, dict) and self._fresh(entry, now_ms)
                    and self.profile.is_valid_tier(entry.get("tier"))):
                tiers[token_id] = entry["tier"]
            else:
                missing.append(token_id)

        logger.info(f"{self.profile.key}: {len(tiers)} tiers cached, {len(missing)} to fetch")
        if not missing:
            return tiers

        chunk = self.profile.max_tokens_per_owner_query
        for start in range(0, len(missing), chunk):
            part = missing[start:start + chunk]
            results = self.chain.multicall([Call(self.profile.address, self.profile.tier_function, (t,)) for t in part])
            for token_id, result in zip(part, results):
                tier, rarity = self._decode(token_id, result)
                tiers[token_id] = tier
                if tier:
                    entry = {"tier": tier, "timestamp": now_ms}
                    if rarity is not None:
                        entry["rarityClass"] = rarity
                    cache[str(token_id)] = entry
                else:
                    cache.pop(str(token_id), None)
            if on_progress is not None:
                on_progress(min(start + chunk, len(missing)), len(missing))

        if not self.store.set(self.cache_key, cache, ttl=self.ttl):
            logger.warning(f"{self.profile.key}: tier cache persisted in degraded mode")
        if self.anomalies:
            logger.warning(f"{self.profile.key}: {len(self.anomalies)} tokens without a valid tier")
        return tiers

    def _decode(self, token_id, result):
        if not result.ok:
            self._anomaly(token_id, f"tier lookup failed: {result.error}")
            return 0, None
        try:
            tier, rarity = self.profile.tier_decoder(result.value)
        except DataError as e:
            self._anomaly(token_id, e)
            return 0, None
        if not self.profile.is_valid_tier(tier):
            self._anomaly(token_id, f"Invalid tier {tier}, max tier {self.profile.max_tier}")
            return 0, None
        if rarity is not None and self.profile.rarity_classes and not 0 <= rarity < self.profile.rarity_classes:
            self._anomaly(token_id, f"Invalid rarity {rarity}", phase="fetch_rarity")
            rarity = None
        return tier, rarity

    def _anomaly(self, token_id, error, phase="fetch_tier"):
        logger.warning(f"{self.profile.key}: token {token_id}: {error}")
        self.anomalies.append(error_entry(phase, error, tokenId=token_id))

    def rarity_classes(self, token_ids):
        cache = self._load_cache()
        out = {}
        for token_id in token_ids:
            entry = cache.get(str(token_id))
            if isinstance(entry, dict) and isinstance(entry.get("rarityClass"), int):
                out[token_id] = entry["rarityClass"]
        return out


@dataclass
class RewardPools:
    total_shares: float = 0.0
    to_distribute_day8: float = 0.0
    to_distribute_day28: float = 0.0
    to_distribute_day90: float = 0.0

    def pending(self, shares):
        """Per-pool share of `shares`, keyed by day."""
        if not self.total_shares:
            return {8: 0.0, 28: 0.0, 90: 0.0}
        ratio = shares / self.total_shares
        return {
            8: ratio * self.to_distribute_day8,
            28: ratio * self.to_distribute_day28,
            90: ratio * self.to_distribute_day90,
        }


@dataclass
class Reward:
    shares: float = 0.0
    locked_amount: float = 0.0
    claimable: float = 0.0


def from_wei(value) -> float:
    return float(Web3.from_wei(int(value or 0), "ether"))


class ShareRewardResolver:
    """Reads shares, locked amounts and claimable rewards for share-based yield."""

    POOL_INDEXES = (0, 1, 2)

    def __init__(self, profile, chain):
        self.profile = profile
        self.chain = chain
        self.anomalies = []

    def resolve_pools(self) -> RewardPools:
        address = self.profile.address
        calls = [Call(address, "totalShares")] + [Call(address, "toDistribute", (i,)) for i in self.POOL_INDEXES]
        results = self.chain.multicall(calls)
        values = []
        for call, result in zip(calls, results):
            if result.ok:
                values.append(from_wei(result.value))
            else:
                logger.error(f"{self.profile.key}: {call.function_name}{call.args} failed: {result.error}")
                self.anomalies.append(error_entry("fetch_reward_pools", result.error, function=call.function_name))
                values.append(0.0)
        pools = RewardPools(*values)
        logger.debug(f"{self.profile.key}: totalShares={pools.total_shares} toDistributeDay8={pools.to_distribute_day8}")
        return pools

    def resolve_rewards(self, token_ids, wallet) -> Reward:
        return self.resolve_many({wallet: token_ids}).get(wallet, Reward())

    def resolve_many(self, owner_map):
        """`{wallet: [tokenId]}` -> `{wallet: Reward}` in one multicall sweep."""
        self.anomalies = []
        address = self.profile.address
        calls, index = [], []
        for wallet, token_ids in owner_map.items():
            ids = sorted(token_ids)
            if not ids:
                continue
            for token_id in ids:
                calls.append(Call(address, "userRecords", (token_id,)))
                index.append((wallet, token_id))
            calls.append(Call(address, "batchClaimableAmount", (ids,)))
            index.append((wallet, None))

        rewards = {wallet: Reward() for wallet, ids in owner_map.items() if ids}
        for (wallet, token_id), result in zip(index, self.chain.multicall(calls)):
            reward = rewards[wallet]
            if not result.ok:
                phase = "fetch_records" if token_id is not None else "fetch_claimable"
                self.anomalies.append(error_entry(phase, result.error, wallet=wallet, tokenId=token_id))
                continue
            if token_id is None:
                reward.claimable = from_wei(result.value)
                continue
            try:
                shares, locked = result.value[0], result.value[1]
            except (TypeError, IndexError):
                self.anomalies.append(error_entry("fetch_records", f"malformed record {result.value!r}",
                                                  wallet=wallet, tokenId=token_id))
                continue
            reward.shares += from_wei(shares)
            reward.locked_amount += from_wei(locked)

        if self.anomalies:
            logger.warning(f"{self.profile.key}: {len(self.anomalies)} reward reads failed")
        return rewards
