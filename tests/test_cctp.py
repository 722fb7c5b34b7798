"""Tests for the CCTP adapter."""

import httpx
import pytest
from eth_abi import decode, encode
from web3 import Web3

from rebalancer.bridges.base import SupportedBridge, TransactionLog, TransactionMemo, TransactionReceipt
from rebalancer.bridges.cctp import (
    MESSAGE_SENT_TOPIC,
    MESSAGE_TRANSMITTER_V2,
    MESSAGE_TRANSMITTERS_V1,
    TOKEN_MESSENGER_V2,
    TOKEN_MESSENGERS_V1,
    CctpBridgeAdapter,
)
from rebalancer.bridges.evm import APPROVE_SELECTOR, selector
from rebalancer.config import RouteConfig
from rebalancer.errors import BuildFailedError, CompletionCheckError, QuoteUnavailableError

from conftest import AGENT, ARB_RPC, TOKEN_X, USDC_ARB, make_config

IRIS = "https://iris.test"
MESSAGE = "0x" + "ab" * 40
ATTESTATION = "0x" + "cd" * 65
BURN_TX = "0x" + "1" * 64


def route(asset: str = USDC_ARB, destination: int = 1) -> RouteConfig:
    return RouteConfig(
        origin=42161, destination=destination, asset=asset, maximum=0, preferences=["cctpv1"], slippages=[0]
    )


def burn_receipt() -> TransactionReceipt:
    return TransactionReceipt(
        transaction_hash=BURN_TX,
        logs=[
            TransactionLog(
                address=MESSAGE_TRANSMITTERS_V1[42161],
                topics=[MESSAGE_SENT_TOPIC],
                data="0x" + encode(["bytes"], [bytes.fromhex(MESSAGE[2:])]).hex(),
            )
        ],
    )


def message_hash() -> str:
    return "0x" + bytes(Web3.keccak(hexstr=MESSAGE)).hex()


def allowance(value: int):
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "0x" + f"{value:064x}"})


@pytest.fixture
def v1() -> CctpBridgeAdapter:
    return CctpBridgeAdapter("v1", make_config(), url=IRIS, timeout=5.0)


@pytest.fixture
def v2() -> CctpBridgeAdapter:
    return CctpBridgeAdapter("v2", make_config(), url=IRIS, timeout=5.0)


class TestQuote:
    def test_type(self, v1, v2):
        assert v1.type() == SupportedBridge.CCTP_V1
        assert v2.type() == SupportedBridge.CCTP_V2

    def test_unknown_version(self):
        with pytest.raises(ValueError):
            CctpBridgeAdapter("v3", make_config())

    @pytest.mark.asyncio
    async def test_standard_transfer_is_fee_free(self, v1, v2):
        assert await v1.get_received_amount(1_000_000, route()) == 1_000_000
        assert await v2.get_received_amount(1_000_000, route()) == 1_000_000

    @pytest.mark.asyncio
    async def test_fast_transfer_pays_max_fee(self):
        fast = CctpBridgeAdapter("v2", make_config(), url=IRIS, fast_transfer=True)
        assert await fast.get_received_amount(1_000_000, route()) == 999_900

    @pytest.mark.asyncio
    async def test_non_usdc_unsupported(self, v1):
        with pytest.raises(QuoteUnavailableError):
            await v1.get_received_amount(1_000_000, route(asset=TOKEN_X))

    @pytest.mark.asyncio
    async def test_unknown_destination_unsupported(self, v1):
        with pytest.raises(QuoteUnavailableError):
            await v1.get_received_amount(1_000_000, route(destination=999))


class TestSend:
    @pytest.mark.asyncio
    async def test_v1_burn_with_approval(self, v1, respx_mock):
        respx_mock.post(ARB_RPC).mock(return_value=allowance(0))

        approval, burn = await v1.send(AGENT, AGENT, 1_000_000, route())

        assert approval.memo == TransactionMemo.APPROVAL
        assert approval.transaction.to == USDC_ARB
        assert approval.transaction.data.startswith(APPROVE_SELECTOR)
        assert burn.memo == TransactionMemo.REBALANCE
        assert burn.transaction.to == TOKEN_MESSENGERS_V1[42161]

        sig = selector("depositForBurn(uint256,uint32,bytes32,address)")
        assert burn.transaction.data.startswith(sig)
        amount, domain, recipient, token = decode(
            ["uint256", "uint32", "bytes32", "address"], bytes.fromhex(burn.transaction.data[10:])
        )
        assert amount == 1_000_000
        assert domain == 0
        assert recipient[-20:] == bytes.fromhex(AGENT[2:])
        assert token.lower() == USDC_ARB.lower()

    @pytest.mark.asyncio
    async def test_v2_burn_arguments(self, v2, respx_mock):
        respx_mock.post(ARB_RPC).mock(return_value=allowance(10**12))

        (burn,) = await v2.send(AGENT, AGENT, 1_000_000, route())

        assert burn.transaction.to == TOKEN_MESSENGER_V2
        _, domain, recipient, _, caller, max_fee, threshold = decode(
            ["uint256", "uint32", "bytes32", "address", "bytes32", "uint256", "uint32"],
            bytes.fromhex(burn.transaction.data[10:]),
        )
        assert domain == 0
        assert recipient[-20:] == bytes.fromhex(AGENT[2:])
        assert caller == b"\x00" * 32
        assert max_fee == 0
        assert threshold == 2000

    @pytest.mark.asyncio
    async def test_unsupported_asset_fails_build(self, v1):
        with pytest.raises(BuildFailedError):
            await v1.send(AGENT, AGENT, 1_000_000, route(asset=TOKEN_X))


class TestAttestation:
    def test_extract_message(self):
        assert CctpBridgeAdapter.extract_message(burn_receipt()) == MESSAGE

    @pytest.mark.asyncio
    async def test_v1_ready_when_complete(self, v1, respx_mock):
        respx_mock.get(f"{IRIS}/attestations/{message_hash()}").mock(
            return_value=httpx.Response(200, json={"status": "complete", "attestation": ATTESTATION})
        )
        assert await v1.ready_on_destination(1_000_000, route(), burn_receipt()) is True

    @pytest.mark.asyncio
    async def test_v1_not_ready_on_404(self, v1, respx_mock):
        respx_mock.get(f"{IRIS}/attestations/{message_hash()}").mock(return_value=httpx.Response(404))
        assert await v1.ready_on_destination(1_000_000, route(), burn_receipt()) is False

    @pytest.mark.asyncio
    async def test_v1_not_ready_while_pending(self, v1, respx_mock):
        respx_mock.get(f"{IRIS}/attestations/{message_hash()}").mock(
            return_value=httpx.Response(200, json={"status": "pending_confirmations"})
        )
        assert await v1.ready_on_destination(1_000_000, route(), burn_receipt()) is False

    @pytest.mark.asyncio
    async def test_v1_not_ready_without_message(self, v1):
        receipt = TransactionReceipt(transaction_hash=BURN_TX)
        assert await v1.ready_on_destination(1_000_000, route(), receipt) is False

    @pytest.mark.asyncio
    async def test_v1_mint_callback(self, v1, respx_mock):
        respx_mock.get(f"{IRIS}/attestations/{message_hash()}").mock(
            return_value=httpx.Response(200, json={"status": "complete", "attestation": ATTESTATION})
        )

        mint = await v1.destination_callback(route(), burn_receipt())

        assert mint.memo == TransactionMemo.MINT
        assert mint.transaction.to == MESSAGE_TRANSMITTERS_V1[1]
        assert mint.transaction.data.startswith(selector("receiveMessage(bytes,bytes)"))
        message, attestation = decode(["bytes", "bytes"], bytes.fromhex(mint.transaction.data[10:]))
        assert message == bytes.fromhex(MESSAGE[2:])
        assert attestation == bytes.fromhex(ATTESTATION[2:])

    @pytest.mark.asyncio
    async def test_callback_without_attestation_raises(self, v1, respx_mock):
        respx_mock.get(f"{IRIS}/attestations/{message_hash()}").mock(return_value=httpx.Response(404))
        with pytest.raises(CompletionCheckError):
            await v1.destination_callback(route(), burn_receipt())

    @pytest.mark.asyncio
    async def test_v2_looks_up_by_origin_domain_and_hash(self, v2, respx_mock):
        lookup = respx_mock.get(f"{IRIS}/v2/messages/3").mock(
            return_value=httpx.Response(
                200,
                json={"messages": [{"status": "complete", "message": MESSAGE, "attestation": ATTESTATION}]},
            )
        )

        mint = await v2.destination_callback(route(), burn_receipt())

        assert lookup.calls.last.request.url.params["transactionHash"] == BURN_TX
        assert mint.transaction.to == MESSAGE_TRANSMITTER_V2

    @pytest.mark.asyncio
    async def test_v2_not_ready_while_pending(self, v2, respx_mock):
        respx_mock.get(f"{IRIS}/v2/messages/3").mock(
            return_value=httpx.Response(200, json={"messages": [{"status": "pending"}]})
        )
        assert await v2.ready_on_destination(1_000_000, route(), burn_receipt()) is False

    @pytest.mark.asyncio
    async def test_v1_not_ready_on_malformed_attestation(self, v1, respx_mock):
        respx_mock.get(f"{IRIS}/attestations/{message_hash()}").mock(
            return_value=httpx.Response(200, json={"status": "complete"})
        )
        assert await v1.ready_on_destination(1_000_000, route(), burn_receipt()) is False

    @pytest.mark.asyncio
    async def test_v2_not_ready_on_malformed_message(self, v2, respx_mock):
        respx_mock.get(f"{IRIS}/v2/messages/3").mock(
            return_value=httpx.Response(200, json={"messages": [{"status": "complete", "attestation": ATTESTATION}]})
        )
        assert await v2.ready_on_destination(1_000_000, route(), burn_receipt()) is False
