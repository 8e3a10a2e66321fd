import pytest

from holder_ledger import abis
from holder_ledger.chain import CallResult
from holder_ledger.errors import OwnerFetchError
from holder_ledger.events import EventLogTracker
from holder_ledger.profiles import ContractProfile, TierInfo, attribute_tier
from holder_ledger.resolvers import ShareRewardResolver, TierResolver
from holder_ledger.store import CacheStore
from holder_ledger.synchronizer import StalePolicy, Synchronizer

CONTRACT = "0x" + "11" * 20
YIELD_CONTRACT = "0x" + "22" * 20
A = "0x" + "aa" * 20
B = "0x" + "bb" * 20
C = "0x" + "cc" * 20
ZERO = "0x" + "00" * 20
WEI = 10 ** 18


def topic_for(address):
    return bytes(12) + bytes.fromhex(address[2:])


def check_consistency(ledger):
    """Totals match token lists, no token is held twice, ranks run 1..n."""
    seen = set()
    for holder in ledger.holders:
        assert holder.total == len(holder.token_ids) == sum(holder.tiers)
        assert not seen & set(holder.token_ids)
        seen |= set(holder.token_ids)
    assert [h.rank for h in ledger.holders] == list(range(1, len(ledger.holders) + 1))


def make_log(token_id, frm, to, block, log_index=0):
    return {
        "topics": [b"\xdd" * 32, topic_for(frm), topic_for(to), token_id.to_bytes(32, "big")],
        "blockNumber": block,
        "logIndex": log_index,
    }


class FakeChain:
    """In-memory stand-in for ChainReader; counts every remote call."""

    def __init__(self, owners=None, tiers=None, head=100, supply=0, burned=0):
        self.owners = dict(owners or {})
        self.tiers = dict(tiers or {})
        self.head = head
        self.supply = supply
        self.burned = burned
        self.logs = []
        self.records = {}
        self.claimable = {}
        self.total_shares = 0
        self.to_distribute = {0: 0, 1: 0, 2: 0}
        self.fail_tokens = set()
        self.log_error = None
        self.calls = 0
        self.multicalls = []
        self.log_ranges = []

    def register(self, address, abi):
        pass

    def block_number(self):
        self.calls += 1
        return self.head

    def read_view(self, address, function_name, args=()):
        self.calls += 1
        if function_name in ("totalSupply", "tokenId"):
            return self.supply
        if function_name == "totalBurned":
            return self.burned
        raise AssertionError(f"unexpected view {function_name}")

    def get_logs(self, address, event_signature, from_block, to_block):
        self.calls += 1
        self.log_ranges.append((from_block, to_block))
        if self.log_error is not None:
            error = self.log_error(from_block, to_block)
            if error is not None:
                raise error
        return [log for log in self.logs if from_block <= log["blockNumber"] <= to_block]

    def multicall(self, calls, batch_size=None):
        self.calls += 1
        self.multicalls.append([c.function_name for c in calls])
        return [self._answer(c) for c in calls]

    def _answer(self, call):
        name, args = call.function_name, call.args
        if args and isinstance(args[0], int) and args[0] in self.fail_tokens:
            return CallResult.failure("execution reverted")
        if name == "ownerOf":
            owner = self.owners.get(args[0])
            return CallResult.success(owner) if owner else CallResult.failure("ERC721: invalid token ID")
        if name in ("getNftTier", "getNFTAttribute"):
            if args[0] not in self.tiers:
                return CallResult.failure("execution reverted")
            return CallResult.success(self.tiers[args[0]])
        if name == "userRecords":
            return CallResult.success(self.records.get(args[0], (0, 0)))
        if name == "batchClaimableAmount":
            return CallResult.success(sum(self.claimable.get(t, 0) for t in args[0]))
        if name == "totalShares":
            return CallResult.success(self.total_shares)
        if name == "toDistribute":
            return CallResult.success(self.to_distribute[args[0]])
        return CallResult.failure(f"unknown function {name}")

    def transfer(self, token_id, frm, to, block, log_index=0):
        self.logs.append(make_log(token_id, frm, to, block, log_index))
        if to == ZERO:
            self.owners.pop(token_id, None)
        else:
            self.owners[token_id] = to


class FakeOwnerDirectory:
    def __init__(self, chain, fail=False):
        self.chain = chain
        self.fail = fail
        self.anomalies = []
        self.calls = 0

    def list_owners(self, contract_address):
        self.calls += 1
        if self.fail:
            raise OwnerFetchError("page 1: 503 Service Unavailable")
        out = {}
        for token_id, wallet in self.chain.owners.items():
            out.setdefault(wallet, []).append(token_id)
        return {w: sorted(ids) for w, ids in out.items()}


@pytest.fixture
def profile():
    return ContractProfile(
        key="testnft",
        name="Test NFT",
        address=CONTRACT,
        deployment_block=1,
        tiers={1: TierInfo("Common", 10), 2: TierInfo("Rare", 100)},
        abi=abis.ELEMENT_ABI,
    )


@pytest.fixture
def yield_profile():
    return ContractProfile(
        key="testyield",
        name="Test Yield",
        address=YIELD_CONTRACT,
        deployment_block=1,
        tiers={1: TierInfo("Tier 1", 1.01), 2: TierInfo("Tier 2", 1.02)},
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
    )


@pytest.fixture
def store(tmp_path):
    return CacheStore(str(tmp_path / "cache"))


@pytest.fixture
def example_chain():
    # tokens 1,2,3 owned by A,A,B with tiers 1,2,1
    return FakeChain(owners={1: A, 2: A, 3: B}, tiers={1: 1, 2: 2, 3: 1}, head=100, supply=3, burned=0)


@pytest.fixture
def make_sync(store):
    def factory(profile, chain, owners=None, stale_after=600.0, chunk_size=200, clock=None):
        owners = owners if owners is not None else FakeOwnerDirectory(chain)
        rewards = profile.reward_resolver(profile, chain) if profile.reward_resolver else None
        kwargs = {"clock": clock} if clock else {}
        return Synchronizer(
            profile, chain, owners, EventLogTracker(chain, chunk_size=chunk_size),
            TierResolver(profile, chain, store), store, rewards, StalePolicy(stale_after), **kwargs,
        )
    return factory
