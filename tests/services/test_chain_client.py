from unittest.mock import MagicMock

import pytest
from web3.exceptions import TimeExhausted, TransactionNotFound

from services.chain_client import TransactionRequest, Web3ChainClient
from strategy.errors import ChainError, ConfirmationTimeout, SubmissionFailed
from strategy.models import AmountPolicy

WALLET = '0x' + 'aa' * 20


@pytest.fixture
def web3():
    mock = MagicMock()
    contract = mock.eth.contract.return_value
    contract.functions.decimals.return_value.call.return_value = 6
    contract.functions.allowance.return_value.call.return_value = 10 ** 12
    contract.functions.maxWithdraw.return_value.call.return_value = 250 * 10 ** 6
    return mock


@pytest.fixture
def client(web3):
    return Web3ChainClient('http://localhost:8545', '0x' + '1' * 64, wallet_address=WALLET, web3=web3)


@pytest.mark.asyncio
async def test_prepare_fixed_deposit_scales_by_decimals(client, web3, make_opportunity):
    tx = await client.prepare('deposit', make_opportunity(), AmountPolicy(kind='fixed', amount=100.0))

    assert tx.amount_wei == 100 * 10 ** 6
    assert tx.amount == 100.0
    web3.eth.contract.return_value.functions.deposit.assert_called_once()


@pytest.mark.asyncio
async def test_prepare_withdraw_all_uses_max_withdraw(client, make_opportunity):
    tx = await client.prepare('withdraw', make_opportunity(), AmountPolicy(kind='all'))

    assert tx.amount == 250.0


@pytest.mark.asyncio
async def test_prepare_rejects_low_allowance(client, web3, make_opportunity):
    web3.eth.contract.return_value.functions.allowance.return_value.call.return_value = 5

    with pytest.raises(ChainError, match='allowance'):
        await client.prepare('deposit', make_opportunity(), AmountPolicy(kind='fixed', amount=100.0))


@pytest.mark.asyncio
async def test_prepare_requires_onchain_addresses(client, make_opportunity):
    with pytest.raises(ChainError):
        await client.prepare('deposit', make_opportunity(pool_address=None), AmountPolicy(kind='fixed', amount=1.0))


@pytest.mark.asyncio
async def test_estimate_gas_returns_fee_and_buffers_limit(client, web3):
    call = MagicMock()
    call.estimate_gas.return_value = 100_000
    web3.eth.gas_price = 10 ** 9
    tx = TransactionRequest(action_type='deposit', to=WALLET, call=call, amount=1.0, amount_wei=10 ** 6)

    fee = await client.estimate_gas(tx)

    assert fee == pytest.approx(0.0001)
    assert tx.gas_limit == 120_000


@pytest.mark.asyncio
async def test_submit_rejection_raises_submission_failed(client, web3):
    web3.eth.send_raw_transaction.side_effect = ValueError("nonce too low")
    tx = TransactionRequest(action_type='deposit', to=WALLET, call=MagicMock(), amount=1.0, amount_wei=10 ** 6)

    with pytest.raises(SubmissionFailed):
        await client.submit(tx)


@pytest.mark.asyncio
async def test_submit_returns_hex_hash(client, web3):
    web3.eth.send_raw_transaction.return_value = b'\x12' * 32
    tx = TransactionRequest(action_type='deposit', to=WALLET, call=MagicMock(), amount=1.0, amount_wei=10 ** 6)

    assert await client.submit(tx) == '0x' + '12' * 32


@pytest.mark.asyncio
async def test_confirmation_timeout_is_translated(client, web3):
    web3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("not mined")

    with pytest.raises(ConfirmationTimeout) as excinfo:
        await client.await_confirmation('0xabc', 1.0)

    assert excinfo.value.transaction_hash == '0xabc'


@pytest.mark.asyncio
async def test_receipt_lookup(client, web3):
    web3.eth.get_transaction_receipt.return_value = {
        'status': 0,
        'gasUsed': 21_000,
        'effectiveGasPrice': 10 ** 9,
        'blockNumber': 7,
    }

    result = await client.get_receipt('0xabc')

    assert result.success is False
    assert result.gas_fee == pytest.approx(0.000021)
    assert result.block_number == 7

    web3.eth.get_transaction_receipt.side_effect = TransactionNotFound("unknown")
    assert await client.get_receipt('0xabc') is None


@pytest.mark.asyncio
async def test_receipt_lookup_transport_error_is_wrapped(client, web3):
    web3.eth.get_transaction_receipt.side_effect = ConnectionError("rpc down")

    with pytest.raises(ChainError, match='rpc down'):
        await client.get_receipt('0xabc')
