"""Per-collection capabilities.

Each indexed collection is described once by a :class:`ContractProfile`. The
synchronizer and the resolvers only ask the profile what the collection can
do (does it pay yield, which view returns the tier, which functions must be
present) instead of branching on the collection name.
"""
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from holder_ledger import abis
from holder_ledger.errors import ConfigurationError, DataError
from holder_ledger.resolvers import ShareRewardResolver


@dataclass(frozen=True)
class TierInfo:
    name: str
    multiplier: float


def scalar_tier(value) -> Tuple[int, Optional[int]]:
    """`getNftTier(id) -> uint8`"""
    if isinstance(value, bool) or not isinstance(value, int):
        raise DataError(f"expected an integer tier, got {value!r}")
    return value, None


def attribute_tier(value) -> Tuple[int, Optional[int]]:
    """`getNFTAttribute(id) -> (rarityNumber, tier, rarity)`"""
    if not isinstance(value, (tuple, list)) or len(value) < 3:
        raise DataError(f"malformed attribute tuple {value!r}")
    try:
        return int(value[1]), int(value[2])
    except (TypeError, ValueError) as e:
        raise DataError(f"malformed attribute tuple {value!r}: {e}") from e


@dataclass(frozen=True)
class ContractProfile:
    key: str
    name: str
    address: Optional[str]
    deployment_block: int
    tiers: Dict[int, TierInfo]
    abi: list
    supports_yield: bool = False
    tier_function: str = "getNftTier"
    tier_decoder: Callable = scalar_tier
    supply_function: str = "totalSupply"
    burned_function: Optional[str] = "totalBurned"
    required_functions: Tuple[str, ...] = ("totalSupply", "totalBurned", "ownerOf", "getNftTier")
    reward_resolver: Optional[type] = None
    max_tokens_per_owner_query: int = 200
    rarity_classes: int = 0
    disabled: bool = False

    @property
    def max_tier(self) -> int:
        return max(self.tiers) if self.tiers else 0

    def multiplier(self, tier: int) -> float:
        info = self.tiers.get(tier)
        return info.multiplier if info else 0

    def is_valid_tier(self, tier) -> bool:
        return isinstance(tier, int) and 1 <= tier <= self.max_tier

    def validate(self):
        """Raise ConfigurationError when the profile cannot be synchronized.

        Only local data is inspected; no remote call is made.
        """
        if self.disabled:
            raise ConfigurationError(f"{self.key} is disabled")
        if not self.address:
            raise ConfigurationError(f"{self.key}: contract address missing")
        if not self.abi:
            raise ConfigurationError(f"{self.key}: ABI missing")
        if not self.tiers:
            raise ConfigurationError(f"{self.key}: no tiers configured")
        missing = [fn for fn in self.required_functions if fn not in abis.function_names(self.abi)]
        if missing:
            raise ConfigurationError(f"{self.key}: missing ABI functions: {', '.join(missing)}")
        if self.supports_yield and self.reward_resolver is None:
            raise ConfigurationError(f"{self.key}: yield contract without a reward resolver")


def _tiers(*entries):
    return {i + 1: TierInfo(name, multiplier) for i, (name, multiplier) in enumerate(entries)}


PROFILES = {
    "element280": ContractProfile(
        key="element280",
        name="Element 280",
        address="0x7F090d101936008a26Bf1F0a22a5f92fC0Cf46c9",
        deployment_block=20945304,
        tiers=_tiers(
            ("Common", 10), ("Common Amped", 12),
            ("Rare", 100), ("Rare Amped", 120),
            ("Legendary", 1000), ("Legendary Amped", 1200),
        ),
        abi=abis.ELEMENT_ABI,
        max_tokens_per_owner_query=100,
    ),
    "element369": ContractProfile(
        key="element369",
        name="Element 369",
        address="0x024D64E2F65747d8bB02dFb852702D588A062575",
        deployment_block=21224418,
        tiers=_tiers(("Common", 1), ("Rare", 10), ("Legendary", 100)),
        abi=abis.ELEMENT_ABI,
    ),
    "stax": ContractProfile(
        key="stax",
        name="Stax",
        address="0x74270Ca3a274B4dbf26be319A55188690CACE6E1",
        deployment_block=21452667,
        tiers=_tiers(
            ("Common", 1), ("Common Amped", 1.2), ("Common Super", 1.4), ("Common LFG", 2),
            ("Rare", 10), ("Rare Amped", 12), ("Rare Super", 14), ("Rare LFG", 20),
            ("Legendary", 100), ("Legendary Amped", 120), ("Legendary Super", 140), ("Legendary LFG", 200),
        ),
        abi=abis.ELEMENT_ABI,
    ),
    "ascendant": ContractProfile(
        key="ascendant",
        name="Ascendant",
        address="0x9da95c32c5869c84ba2c020b5e87329ec0adc97f",
        deployment_block=21112535,
        tiers=_tiers(*[(f"Tier {n}", round(1 + n / 100, 2)) for n in range(1, 9)]),
        abi=abis.ASCENDANT_ABI,
        supports_yield=True,
        tier_function="getNFTAttribute",
        tier_decoder=attribute_tier,
        supply_function="tokenId",
        burned_function=None,
        required_functions=("ownerOf", "getNFTAttribute", "userRecords", "totalShares",
                            "toDistribute", "batchClaimableAmount"),
        reward_resolver=ShareRewardResolver,
        rarity_classes=3,
    ),
}
