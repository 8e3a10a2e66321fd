"""Current-owner snapshot from the Alchemy NFT API (`getOwnersForContract`)."""
import logging
from collections import defaultdict

import requests
from web3 import Web3

from holder_ledger.config import BURN_ADDRESSES
from holder_ledger.errors import ConfigurationError, OwnerFetchError, ProviderError
from holder_ledger.state import error_entry

logger = logging.getLogger(__name__)

ALCHEMY_NFT_URL = "https://{network}.g.alchemy.com/nft/v3/{key}"


def parse_token_id(raw) -> int:
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    text = str(raw).strip()
    return int(text, 16) if text.lower().startswith("0x") else int(text)


class OwnerDirectory:
    def __init__(self, api_key, network="eth-mainnet", retrier=None, max_pages=100, session=None, timeout=30):
        if not api_key:
            raise ConfigurationError("ALCHEMY_API_KEY is required for the owner directory")
        self.base_url = ALCHEMY_NFT_URL.format(network=network, key=api_key)
        self.retrier = retrier
        self.max_pages = max_pages
        self.session = session or requests.Session()
        self.timeout = timeout
        self.anomalies = []

    def _get_page(self, contract_address, page_key):
        params = {"contractAddress": contract_address, "withTokenBalances": "true"}
        if page_key:
            params["pageKey"] = page_key

        def fetch():
            resp = self.session.get(f"{self.base_url}/getOwnersForContract", params=params, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()

        if self.retrier is None:
            return fetch()
        return self.retrier.execute(fetch, label="getOwnersForContract")

    def list_owners(self, contract_address):
        """Return `{wallet: [tokenId, ...]}` for every live token.

        The whole listing is aborted with OwnerFetchError when any page
        fails; there is no resume from the middle of a listing.
        """
        self.anomalies = []
        owners = defaultdict(set)
        seen = {}
        page_key = None
        pages = 0

        while True:
            try:
                payload = self._get_page(contract_address, page_key)
            except (ProviderError, requests.RequestException, ValueError) as e:
                logger.error(f"Owner listing for {contract_address} failed on page {pages + 1}: {e}")
                raise OwnerFetchError(f"page {pages + 1}: {e}") from e

            entries = payload.get("owners") if isinstance(payload, dict) else None
            if not isinstance(entries, list):
                raise OwnerFetchError(f"page {pages + 1}: malformed response without an owners list")

            for entry in entries:
                self._add_owner(entry, owners, seen)

            pages += 1
            page_key = payload.get("pageKey")
            logger.debug(f"Owners page {pages} for {contract_address}: {len(entries)} entries, {len(seen)} tokens so far")
            if not page_key:
                break
            if pages >= self.max_pages:
                logger.warning(f"Reached max pages ({self.max_pages}) listing owners of {contract_address}; snapshot may be partial")
                break

        logger.info(f"Fetched {len(seen)} tokens across {len(owners)} owners for {contract_address} ({pages} pages)")
        return {wallet: sorted(ids) for wallet, ids in owners.items() if ids}

    def _add_owner(self, entry, owners, seen):
        if not isinstance(entry, dict):
            self.anomalies.append(error_entry("fetching_holders", f"unexpected owner entry {entry!r}"))
            return
        raw_wallet = entry.get("ownerAddress") or ""
        if not Web3.is_address(raw_wallet):
            self.anomalies.append(error_entry("fetching_holders", "invalid owner address", wallet=str(raw_wallet)))
            logger.warning(f"Skipping invalid owner address {raw_wallet!r}")
            return
        wallet = raw_wallet.lower()
        if wallet in BURN_ADDRESSES:
            return

        for balance in entry.get("tokenBalances") or []:
            try:
                token_id = parse_token_id(balance.get("tokenId"))
                amount = int(balance.get("balance", 1))
            except (TypeError, ValueError, AttributeError) as e:
                self.anomalies.append(error_entry("fetching_holders", f"unparsable token balance: {e}", wallet=wallet))
                continue
            if amount <= 0:
                continue
            if token_id in seen:
                self.anomalies.append(error_entry(
                    "fetching_holders", "token listed under two owners",
                    tokenId=token_id, wallet=wallet, firstOwner=seen[token_id],
                ))
                logger.warning(f"Token {token_id} listed for {seen[token_id]} and {wallet}; keeping the first")
                continue
            seen[token_id] = wallet
            owners[wallet].add(token_id)
