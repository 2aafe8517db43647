import logging
from datetime import datetime
from typing import Optional, Dict, Any, List
import requests
from web3 import Web3

from .config import Config
from .exceptions import UpstreamReadError
from .models import CHANGE_SOURCES, BalanceReading, PowerHistoryPoint
from .utils import normalize_address

# Set up logging
logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# ERC20Votes subset: balances plus one-hop delegation
ERC20_VOTES_ABI = [
    {"constant": True, "inputs": [{"name": "account", "type": "address"}], "name": "balanceOf",
     "outputs": [{"name": "", "type": "uint256"}], "type": "function"},
    {"constant": True, "inputs": [{"name": "account", "type": "address"}], "name": "getVotes",
     "outputs": [{"name": "", "type": "uint256"}], "type": "function"},
    {"constant": True, "inputs": [{"name": "account", "type": "address"}], "name": "delegates",
     "outputs": [{"name": "", "type": "address"}], "type": "function"},
]


class EtherscanClient:
    """Client for Etherscan API."""

    def __init__(self, config: Config):
        self.config = config
        self.base_url = config.etherscan_base_url
        self.api_key = config.etherscan_api_key

    def _make_request(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Make a request to Etherscan API."""
        params["apikey"] = self.api_key

        response = requests.get(self.base_url, params=params,
                                timeout=self.config.read_timeout)
        response.raise_for_status()

        data = response.json()
        # Account endpoints report an empty result as an error status
        if data.get("message") == "No transactions found":
            return {**data, "result": []}
        # Proxy endpoints answer JSON-RPC style without a status field
        if "status" in data and data.get("status") != "1":
            raise UpstreamReadError(
                f"Etherscan API error: {data.get('message', 'Unknown error')}")

        return data

    def get_current_block_number(self) -> int:
        """Get the current block number from Etherscan."""
        params = {
            "module": "proxy",
            "action": "eth_blockNumber"
        }
        data = self._make_request(params)
        # Convert hex to int
        block_hex = data.get("result", "0x0")
        return int(block_hex, 16)

    def get_token_transfers(self, contract_address: str, address: Optional[str] = None,
                            start_block: int = 0, end_block: Optional[int] = None,
                            page: int = 1) -> List[Dict[str, Any]]:
        """Get token transfer events for a contract, newest first.

        With an address, only transfers into or out of that address are returned.
        """
        if end_block is None:
            end_block = self.get_current_block_number()

        params = {
            "module": "account",
            "action": "tokentx",
            "contractaddress": contract_address,
            "startblock": start_block,
            "endblock": end_block,
            "page": page,
            "offset": self.config.max_transfers_per_request,
            "sort": "desc"
        }
        if address:
            params["address"] = address

        data = self._make_request(params)
        return data.get("result", [])


def history_from_transfers(address: str, transfers: List[Dict[str, Any]],
                           current_power: int) -> List[PowerHistoryPoint]:
    """Rebuild past power points by undoing token transfers from the current power.

    Assumes the address's delegation did not change over the covered period, so
    each transfer moved its effective power by the transferred amount. The walk
    stops at the first transfer that would take the power below zero (an older
    page is missing). Points come back oldest first.
    """
    address = normalize_address(address)
    rows = sorted(transfers, key=lambda t: (int(t["blockNumber"]), int(t.get("transactionIndex", 0))),
                  reverse=True)

    points = []
    power = current_power
    for row in rows:
        sender = row.get("from", "").lower()
        recipient = row.get("to", "").lower()
        if sender == recipient or address not in (sender, recipient):
            continue

        amount = int(row["value"])
        change_type = "transfer_in" if recipient == address else "transfer_out"
        before = power - amount if change_type == "transfer_in" else power + amount
        if before < 0:
            logger.warning(
                f"Transfer history for {address} is incomplete before block {row['blockNumber']}")
            break

        points.append(PowerHistoryPoint(
            timestamp=datetime.fromtimestamp(int(row["timeStamp"])),
            block_number=int(row["blockNumber"]),
            power=power,
            change_type=change_type,
            change_amount=amount,
            source=CHANGE_SOURCES[change_type],
            tx_hash=row.get("hash"),
        ))
        power = before

    points.reverse()
    return points


class Web3Client:
    """Reads governance token balances and delegation through a node."""

    def __init__(self, config: Config, provider_url: Optional[str] = None):
        if not config.token_address:
            raise ValueError("TOKEN_ADDRESS is required to read voting power")

        self.config = config
        self.w3 = Web3(Web3.HTTPProvider(
            provider_url or config.rpc_url,
            request_kwargs={"timeout": config.read_timeout}))
        self.token = self.w3.eth.contract(
            address=Web3.to_checksum_address(config.token_address),
            abi=ERC20_VOTES_ABI
        )

    def read_balance(self, address: str) -> Optional[BalanceReading]:
        """Balance, delegated-away power and received delegations for an address."""
        account = Web3.to_checksum_address(address)
        try:
            balance = self.token.functions.balanceOf(account).call()
            votes = self.token.functions.getVotes(account).call()
            delegatee = self.token.functions.delegates(account).call()
        except Exception as e:
            raise UpstreamReadError(
                f"Balance read failed for {address}: {e}", address=address) from e

        delegatee = delegatee.lower()
        if delegatee == account.lower():
            # Self-delegated: votes include the holder's own balance
            delegated = 0
            received = max(0, votes - balance)
        elif delegatee == ZERO_ADDRESS:
            # On chain an undelegated balance has no votes until the holder
            # delegates, but the tracker still counts it as the holder's own
            # power: effective = balance + votes received from others
            delegated = 0
            received = votes
        else:
            delegated = balance
            received = votes

        return BalanceReading(
            power=balance,
            delegated_power=delegated,
            received_delegations=received
        )

    def current_block(self) -> int:
        return self.w3.eth.block_number


class ChainBlockSource:
    """Block numbers from Etherscan when a key is configured, else from the node.

    Never moves backwards, even if the provider lags behind a previous answer.
    """

    def __init__(self, web3_client: Web3Client,
                 etherscan_client: Optional[EtherscanClient] = None):
        self.web3_client = web3_client
        self.etherscan_client = etherscan_client
        self._last_block = 0

    def current_block(self) -> int:
        block = None
        if self.etherscan_client is not None and self.etherscan_client.api_key:
            try:
                block = self.etherscan_client.get_current_block_number()
            except (requests.RequestException, UpstreamReadError, ValueError) as e:
                logger.warning(f"Failed to get current block number from Etherscan: {e}")

        if block is None:
            block = self.web3_client.current_block()

        self._last_block = max(self._last_block, block)
        return self._last_block

