"""Folding owners, tiers and rewards into the ranked holder ledger."""
import logging
import time
from dataclasses import dataclass, field, replace
from typing import List, Optional

from holder_ledger.resolvers import Reward

logger = logging.getLogger(__name__)


@dataclass
class Holder:
    wallet: str
    token_ids: List[int]
    total: int
    tiers: List[int]
    multiplier_sum: float
    percentage: float = 0.0
    rank: int = 0
    claimable_rewards: float = 0.0
    # yield collections only
    shares: Optional[float] = None
    locked_amount: Optional[float] = None
    pending_day8: Optional[float] = None
    pending_day28: Optional[float] = None
    pending_day90: Optional[float] = None

    def to_dict(self):
        data = {
            "wallet": self.wallet,
            "tokenIds": list(self.token_ids),
            "total": self.total,
            "tiers": list(self.tiers),
            "multiplierSum": self.multiplier_sum,
            "percentage": self.percentage,
            "rank": self.rank,
            "claimableRewards": self.claimable_rewards,
        }
        if self.shares is not None:
            data.update({
                "shares": self.shares,
                "lockedAmount": self.locked_amount,
                "pendingDay8": self.pending_day8,
                "pendingDay28": self.pending_day28,
                "pendingDay90": self.pending_day90,
            })
        return data

    @classmethod
    def from_dict(cls, data):
        return cls(
            wallet=data["wallet"],
            token_ids=[int(t) for t in data["tokenIds"]],
            total=int(data["total"]),
            tiers=[int(t) for t in data["tiers"]],
            multiplier_sum=data["multiplierSum"],
            percentage=data.get("percentage", 0.0),
            rank=data.get("rank", 0),
            claimable_rewards=data.get("claimableRewards", 0.0),
            shares=data.get("shares"),
            locked_amount=data.get("lockedAmount"),
            pending_day8=data.get("pendingDay8"),
            pending_day28=data.get("pendingDay28"),
            pending_day90=data.get("pendingDay90"),
        )


@dataclass
class Ledger:
    holders: List[Holder]
    total_burned: int = 0
    timestamp: int = 0
    # tokens left out of every holder because their tier is unknown
    unresolved: List[int] = field(default_factory=list)

    def to_dict(self):
        return {
            "holders": [h.to_dict() for h in self.holders],
            "totalBurned": self.total_burned,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            holders=[Holder.from_dict(h) for h in data["holders"]],
            total_burned=int(data["totalBurned"]),
            timestamp=data.get("timestamp") or 0,
        )

    def owner_map(self):
        return {h.wallet: list(h.token_ids) for h in self.holders}


def is_valid_ledger(payload) -> bool:
    """Shape check deciding whether a cached ledger can seed an incremental run."""
    if not isinstance(payload, dict):
        return False
    holders = payload.get("holders")
    burned = payload.get("totalBurned")
    if not isinstance(holders, list) or isinstance(burned, bool) or not isinstance(burned, int):
        return False
    for h in holders:
        if not isinstance(h, dict) or not isinstance(h.get("wallet"), str):
            return False
        if not isinstance(h.get("tokenIds"), list) or not isinstance(h.get("tiers"), list):
            return False
    return True


class LedgerBuilder:
    def __init__(self, profile):
        self.profile = profile

    def _sort_key(self, holder):
        if self.profile.supports_yield:
            return (-(holder.shares or 0), -holder.total, holder.wallet)
        return (-holder.multiplier_sum, -holder.total, holder.wallet)

    def _make_holder(self, wallet, token_ids, tier_map, reward, pools, unresolved):
        tiers = [0] * self.profile.max_tier
        owned = []
        for token_id in sorted(set(token_ids)):
            tier = tier_map.get(token_id, 0)
            if not self.profile.is_valid_tier(tier):
                unresolved.append(token_id)
                continue
            tiers[tier - 1] += 1
            owned.append(token_id)
        if not owned:
            return None

        reward = reward or Reward()
        holder = Holder(
            wallet=wallet,
            token_ids=owned,
            total=len(owned),
            tiers=tiers,
            multiplier_sum=sum(self.profile.multiplier(tier_map[t]) for t in owned),
            claimable_rewards=reward.claimable,
        )
        if self.profile.supports_yield:
            holder.shares = reward.shares
            holder.locked_amount = reward.locked_amount
            self._set_pending(holder, pools)
        return holder

    def _set_pending(self, holder, pools):
        pending = pools.pending(holder.shares or 0) if pools else {8: 0.0, 28: 0.0, 90: 0.0}
        holder.pending_day8 = pending[8]
        holder.pending_day28 = pending[28]
        holder.pending_day90 = pending[90]

    def _finalize(self, holders, total_burned, timestamp, unresolved):
        ordered = sorted(holders, key=self._sort_key)
        pool = sum(h.multiplier_sum for h in ordered)
        for rank, holder in enumerate(ordered, start=1):
            holder.rank = rank
            holder.percentage = holder.multiplier_sum / pool * 100 if pool else 0.0
        return Ledger(
            holders=ordered,
            total_burned=total_burned,
            timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
            unresolved=sorted(set(unresolved)),
        )

    def build_full(self, owner_map, tier_map, reward_map=None, total_burned=0, pools=None, timestamp=None) -> Ledger:
        reward_map = reward_map or {}
        unresolved = []
        holders = []
        for wallet, token_ids in owner_map.items():
            holder = self._make_holder(wallet.lower(), token_ids, tier_map, reward_map.get(wallet), pools, unresolved)
            if holder is not None:
                holders.append(holder)
        if unresolved:
            logger.warning(f"{self.profile.key}: {len(unresolved)} tokens excluded for unknown tier")
        return self._finalize(holders, total_burned, timestamp, unresolved)

    def apply_incremental(self, ledger, burns, transfers, tier_map, reward_map=None, pools=None, timestamp=None) -> Ledger:
        """Patch `ledger` with a block-ordered event diff.

        Every holder the diff touches is re-derived from its complete token
        list, so `tier_map` must cover all tokens of those holders. Ranks and
        percentages are recomputed over the whole ledger.
        """
        reward_map = reward_map or {}
        by_wallet = {h.wallet: replace(h) for h in ledger.holders}
        holdings = {h.wallet: set(h.token_ids) for h in ledger.holders}
        owner = {t: h.wallet for h in ledger.holders for t in h.token_ids}
        touched = set()

        for transfer in sorted(transfers, key=lambda t: (t.block_number, t.log_index)):
            sender = owner.get(transfer.token_id)
            if sender is not None:
                holdings[sender].discard(transfer.token_id)
                touched.add(sender)
            receiver = transfer.to_address.lower()
            owner[transfer.token_id] = receiver
            holdings.setdefault(receiver, set()).add(transfer.token_id)
            touched.add(receiver)

        total_burned = ledger.total_burned
        for token_id in burns:
            sender = owner.pop(token_id, None)
            if sender is not None:
                holdings[sender].discard(token_id)
                touched.add(sender)
            total_burned += 1

        unresolved = list(ledger.unresolved)
        for wallet in touched:
            holder = self._make_holder(wallet, holdings.get(wallet, ()), tier_map, reward_map.get(wallet), pools, unresolved)
            if holder is None:
                by_wallet.pop(wallet, None)
            else:
                by_wallet[wallet] = holder

        if self.profile.supports_yield and pools is not None:
            for wallet, holder in by_wallet.items():
                if wallet not in touched:
                    self._set_pending(holder, pools)

        logger.info(
            f"{self.profile.key}: applied {len(transfers)} transfers and {len(burns)} burns, "
            f"{len(touched)} holders re-derived"
        )
        return self._finalize(by_wallet.values(), total_burned, timestamp, unresolved)

    def summarize(self, ledger, pools=None, unresolved=0, rarity=None) -> dict:
        live = sum(h.total for h in ledger.holders)
        distribution = [0] * self.profile.max_tier
        for holder in ledger.holders:
            for i, count in enumerate(holder.tiers):
                distribution[i] += count
        metrics = {
            "totalMinted": live + unresolved + ledger.total_burned,
            "totalLive": live,
            "totalBurned": ledger.total_burned,
            "totalHolders": len(ledger.holders),
            "tierDistribution": distribution,
            "multiplierPool": sum(h.multiplier_sum for h in ledger.holders),
            "unresolvedTokens": unresolved,
        }
        if self.profile.supports_yield:
            metrics.update({
                "totalShares": pools.total_shares if pools else 0.0,
                "totalLocked": sum(h.locked_amount or 0 for h in ledger.holders),
                "toDistributeDay8": pools.to_distribute_day8 if pools else 0.0,
                "toDistributeDay28": pools.to_distribute_day28 if pools else 0.0,
                "toDistributeDay90": pools.to_distribute_day90 if pools else 0.0,
                "pendingRewards": (pools.to_distribute_day8 + pools.to_distribute_day28
                                   + pools.to_distribute_day90) if pools else 0.0,
                "rarityDistribution": list(rarity or [0] * self.profile.rarity_classes),
            })
        return metrics
