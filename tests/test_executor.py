import json

import pytest

from gacha_x402.constants import DEFAULT_ASSETS, EOA_GAS_LIMIT, SMART_WALLET_GAS_LIMIT
from gacha_x402.errors import InsufficientFunds, NoAccount, TransferFailed, WrongNetwork
from gacha_x402.executor import PaymentExecutor, encode_transfer
from gacha_x402.models import PaymentRequirement
from gacha_x402.rpc import RpcError
from gacha_x402.wallet import USER_REJECTED, LocalAccountWallet, Wallet, WalletError

PAYER = "0x" + "aa" * 20
RECIPIENT = "0x1c7d4b196cb0c7b01d743fbc6116a902379c7238"


class StubWallet(Wallet):
    def __init__(self, accounts=(PAYER,), chain_id=84532, code="0x", gas=None, send_error=None, switch_ok=True, chain_error=None):
        self.accounts = list(accounts)
        self.chain_id = chain_id
        self.code = code
        self.gas = gas
        self.send_error = send_error
        self.switch_ok = switch_ok
        self.chain_error = chain_error
        self.sent = []
        self.switched_to = []

    async def get_accounts(self):
        return self.accounts

    async def get_chain_id(self):
        if self.chain_error is not None:
            raise self.chain_error
        return self.chain_id

    async def switch_chain(self, chain_id):
        self.switched_to.append(chain_id)
        if not self.switch_ok:
            raise WalletError("user rejected switch", code=USER_REJECTED)
        self.chain_id = chain_id

    async def get_code(self, address):
        return self.code

    async def estimate_gas(self, tx):
        if self.gas is None:
            raise WalletError("estimation failed")
        return self.gas

    async def send_transaction(self, tx):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(tx)
        return "0x" + "cd" * 32


def _requirement(amount="0.010", network="eip155:84532"):
    return PaymentRequirement(amount=amount, network=network, recipient=RECIPIENT)


def test_encode_transfer_layout():
    data = encode_transfer(RECIPIENT, 10_000)
    assert data.startswith("0xa9059cbb")
    assert len(data) == 2 + 8 + 64 * 2
    assert data.endswith(hex(10_000)[2:].rjust(64, "0"))
    with pytest.raises(ValueError):
        encode_transfer("0x1234", 1)


@pytest.mark.asyncio
async def test_pay_sends_usdc_transfer_with_buffered_gas():
    wallet = StubWallet(gas=50_000)
    receipt = await PaymentExecutor(wallet).pay(_requirement())

    assert receipt.tx_hash == "0x" + "cd" * 32
    assert receipt.base_units == 10_000
    assert receipt.payer == PAYER
    assert receipt.gas_limit == 60_000
    tx = wallet.sent[0]
    assert tx["to"] == DEFAULT_ASSETS["eip155:84532"]["address"]
    assert tx["gas"] == 60_000
    assert tx["data"] == encode_transfer(RECIPIENT, 10_000)


@pytest.mark.asyncio
@pytest.mark.parametrize("code, expected", [("0x", EOA_GAS_LIMIT), ("0x6080604052", SMART_WALLET_GAS_LIMIT)])
async def test_gas_fallback_depends_on_account_type(code, expected):
    wallet = StubWallet(code=code, gas=None)
    receipt = await PaymentExecutor(wallet).pay(_requirement())
    assert receipt.gas_limit == expected


@pytest.mark.asyncio
async def test_switches_network_before_paying():
    wallet = StubWallet(chain_id=8453, gas=40_000)
    await PaymentExecutor(wallet).pay(_requirement())
    assert wallet.switched_to == [84532]
    assert wallet.sent


@pytest.mark.asyncio
async def test_wrong_network_when_switch_fails():
    wallet = StubWallet(chain_id=1, switch_ok=False)
    with pytest.raises(WrongNetwork):
        await PaymentExecutor(wallet).pay(_requirement())
    assert wallet.sent == []


@pytest.mark.asyncio
async def test_wrong_network_for_unsupported_requirement():
    with pytest.raises(WrongNetwork):
        await PaymentExecutor(StubWallet()).pay(_requirement(network="eip155:1"))


@pytest.mark.asyncio
async def test_no_account():
    with pytest.raises(NoAccount):
        await PaymentExecutor(StubWallet(accounts=())).pay(_requirement())


@pytest.mark.asyncio
async def test_insufficient_funds_and_generic_failure():
    wallet = StubWallet(gas=1, send_error=WalletError("transfer amount exceeds balance: insufficient funds"))
    with pytest.raises(InsufficientFunds):
        await PaymentExecutor(wallet).pay(_requirement())

    wallet = StubWallet(gas=1, send_error=RuntimeError("nonce too low"))
    with pytest.raises(TransferFailed):
        await PaymentExecutor(wallet).pay(_requirement())


@pytest.mark.asyncio
async def test_user_rejection_is_transfer_failed():
    wallet = StubWallet(gas=1, send_error=WalletError("User rejected", code=USER_REJECTED))
    with pytest.raises(TransferFailed, match="rejected"):
        await PaymentExecutor(wallet).pay(_requirement())


@pytest.mark.asyncio
async def test_amount_below_smallest_unit_is_rejected():
    wallet = StubWallet(gas=1)
    with pytest.raises(TransferFailed):
        await PaymentExecutor(wallet).pay(_requirement(amount="0.0000001"))
    assert wallet.sent == []


@pytest.mark.asyncio
async def test_local_account_wallet_signs_and_broadcasts():
    httpx = pytest.importorskip("httpx")
    pytest.importorskip("eth_account")
    calls = []

    def handler(request):
        body = json.loads(request.content.decode())
        calls.append(body)
        results = {
            "eth_chainId": hex(84532),
            "eth_gasPrice": hex(1_000_000),
            "eth_getTransactionCount": "0x0",
            "eth_estimateGas": hex(45_000),
            "eth_sendRawTransaction": "0x" + "ef" * 32,
        }
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": results[body["method"]]})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    wallet = LocalAccountWallet("0x" + "11" * 32, http_client=http)
    try:
        receipt = await PaymentExecutor(wallet).pay(_requirement())
    finally:
        await http.aclose()

    assert receipt.tx_hash == "0x" + "ef" * 32
    assert receipt.payer == wallet.address
    raw = [c for c in calls if c["method"] == "eth_sendRawTransaction"][0]["params"][0]
    assert raw.startswith("0x")
    # legacy RLP list, not a typed 0x02 envelope
    assert raw[2:4] in ("f8", "f9")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [RpcError("eth_chainId", "connection refused"), WalletError("No RPC URL configured for network eip155:84532")],
)
async def test_unreadable_chain_is_wrong_network(error):
    wallet = StubWallet(gas=1, chain_error=error)
    with pytest.raises(WrongNetwork, match="Unable to read wallet chain"):
        await PaymentExecutor(wallet).pay(_requirement())
    assert wallet.sent == []
