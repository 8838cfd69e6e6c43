"""Tests for LedgerRPC using httpx's mock transport."""

import base64
import json

import base58
import httpx
import pytest

from fake_ledger import run
from goalstake.client.actions import EscrowActions
from goalstake.client.orchestrator import Phase
from goalstake.core.accounts import Pubkey
from goalstake.core.transactions import Instruction, TransactionBuilder, sign_transaction
from goalstake.errors import OnChainRejection, RpcResponseError, TransportError
from goalstake.networking.rpc import LedgerRPC, SignatureStatus, commitment_reached

OWNER = Pubkey(bytes([4]) * 32)
BLOCKHASH = base58.b58encode(bytes([9]) * 32).decode()


def ledger_with(handler) -> LedgerRPC:
    """LedgerRPC whose HTTP calls go to ``handler(method, params) -> response body``."""
    requests = []

    def respond(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        requests.append(payload)
        body = handler(payload["method"], payload["params"])
        if isinstance(body, httpx.Response):
            return body
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], **body})

    rpc = LedgerRPC("https://ledger.test", transport=httpx.MockTransport(respond))
    rpc.requests = requests
    return rpc


async def call(rpc: LedgerRPC, method: str, *args):
    async with rpc:
        return await getattr(rpc, method)(*args)


def signed_transaction(alice):
    message = TransactionBuilder(alice.address, BLOCKHASH).add_instruction(
        Instruction(OWNER, [], b"\x01")).build()
    return sign_transaction(message, [alice.signing_key])


class TestAccountInfo:
    """Tests for getAccountInfo."""

    def test_decodes_base64(self):
        """Should return raw bytes and the owner."""
        data = b"\x00\x01goal"

        def handler(method, params):
            assert method == "getAccountInfo"
            assert params[1]["encoding"] == "base64"
            return {"result": {"context": {"slot": 1}, "value": {
                "lamports": 1000,
                "data": [base64.b64encode(data).decode(), "base64"],
                "owner": str(OWNER),
                "executable": False,
                "rentEpoch": 18446744073709551615,
            }}}

        info = run(call(ledger_with(handler), "get_account_info", OWNER))
        assert info.data == data
        assert info.owner == OWNER
        assert info.lamports == 1000

    def test_absent_account(self):
        """Should return None when the ledger has no account."""
        rpc = ledger_with(lambda method, params: {"result": {"context": {"slot": 1}, "value": None}})
        assert run(call(rpc, "get_account_info", OWNER)) is None


class TestErrors:
    """Tests for error classification."""

    def test_unreachable(self):
        """Should raise TransportError when the connection fails."""
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        rpc = LedgerRPC("https://ledger.test", transport=httpx.MockTransport(refuse))
        with pytest.raises(TransportError, match="unreachable"):
            run(call(rpc, "get_latest_blockhash"))

    def test_http_error(self):
        """Should raise TransportError on non-2xx responses."""
        rpc = ledger_with(lambda method, params: httpx.Response(503, text="busy"))
        with pytest.raises(TransportError, match="503"):
            run(call(rpc, "get_latest_blockhash"))

    def test_malformed_body(self):
        """Should raise TransportError on a body that is not JSON."""
        rpc = ledger_with(lambda method, params: httpx.Response(200, text="<html>"))
        with pytest.raises(TransportError, match="Malformed"):
            run(call(rpc, "get_latest_blockhash"))

    def test_other_rpc_error(self):
        """Should raise RpcResponseError with the code for unclassified errors."""
        rpc = ledger_with(lambda method, params: {"error": {"code": -32601, "message": "Method not found"}})
        with pytest.raises(RpcResponseError) as info:
            run(call(rpc, "get_latest_blockhash"))
        assert info.value.code == -32601

    def test_preflight_failure(self, alice):
        """Should raise OnChainRejection carrying logs, error code and signature."""
        transaction = signed_transaction(alice)

        def handler(method, params):
            return {"error": {
                "code": -32002,
                "message": "Transaction simulation failed: Error processing Instruction 0",
                "data": {
                    "err": {"InstructionError": [0, {"Custom": 6001}]},
                    "logs": ["Program log: AnchorError: GoalAlreadyStarted"],
                },
            }}

        with pytest.raises(OnChainRejection) as info:
            run(call(ledger_with(handler), "send_transaction", transaction))
        assert info.value.error_code == 6001
        assert info.value.instruction_index == 0
        assert info.value.logs == ["Program log: AnchorError: GoalAlreadyStarted"]
        assert info.value.signature == transaction.signature

    def test_signature_failure_without_detail(self, alice):
        """Should still classify signature verification failures as rejections."""
        rpc = ledger_with(lambda method, params: {"error": {
            "code": -32003, "message": "Transaction signature verification failure"}})
        with pytest.raises(OnChainRejection, match="verification"):
            run(call(rpc, "send_transaction", signed_transaction(alice)))


class TestTransactions:
    """Tests for sending and status polling."""

    def test_send_wire_format(self, alice):
        """Should send the base64 wire transaction with preflight commitment."""
        transaction = signed_transaction(alice)
        rpc = ledger_with(lambda method, params: {"result": transaction.signature})

        assert run(call(rpc, "send_transaction", transaction)) == transaction.signature
        params = rpc.requests[0]["params"]
        assert base64.b64decode(params[0]) == transaction.serialize()
        assert params[1] == {"encoding": "base64", "preflightCommitment": "confirmed"}

    def test_signature_statuses(self):
        """Should map null entries to None and parse the rest."""
        def handler(method, params):
            assert params[0] == ["a", "b"]
            return {"result": {"context": {"slot": 9}, "value": [
                None,
                {"slot": 8, "confirmations": None, "err": None, "confirmationStatus": "finalized"},
            ]}}

        statuses = run(call(ledger_with(handler), "get_signature_statuses", ["a", "b"]))
        assert statuses[0] is None
        assert statuses[1] == SignatureStatus(8, None, None, "finalized")
        assert statuses[1].reached("confirmed")

    def test_history_search(self):
        """Should only search the full history when asked to."""
        rpc = ledger_with(lambda method, params: {"result": {"context": {"slot": 1}, "value": [None]}})

        async def both():
            async with rpc:
                await rpc.get_signature_statuses(["a"])
                await rpc.get_signature_statuses(["a"], search_history=True)

        run(both())
        assert [r["params"][1] for r in rpc.requests] == [
            {"searchTransactionHistory": False},
            {"searchTransactionHistory": True},
        ]

    def test_blockhash_and_balance(self):
        """Should unwrap the context envelope."""
        def handler(method, params):
            if method == "getLatestBlockhash":
                return {"result": {"context": {"slot": 1}, "value": {
                    "blockhash": BLOCKHASH, "lastValidBlockHeight": 100}}}
            return {"result": {"context": {"slot": 1}, "value": 42}}

        rpc = ledger_with(handler)

        async def both():
            async with rpc:
                return await rpc.get_latest_blockhash(), await rpc.get_balance(OWNER)

        assert run(both()) == (BLOCKHASH, 42)
        assert [r["id"] for r in rpc.requests] == [1, 2]


class TestCommitment:
    """Tests for commitment ordering."""

    def test_ordering(self):
        """Should treat stronger levels as satisfying weaker ones."""
        assert commitment_reached("finalized", "confirmed")
        assert commitment_reached("confirmed", "confirmed")
        assert not commitment_reached("processed", "confirmed")
        assert not commitment_reached(None, "processed")

    def test_unknown_level(self):
        """Should reject unknown commitment levels up front."""
        with pytest.raises(ValueError):
            LedgerRPC(commitment="eventual")


class TestMalformedResults:
    """Tests for results that do not have the documented shape."""

    @pytest.mark.parametrize("method,args", [
        ("get_account_info", (OWNER,)),
        ("get_latest_blockhash", ()),
        ("get_balance", (OWNER,)),
        ("get_signature_statuses", (["a"],)),
    ])
    def test_missing_value(self, method, args):
        """Should raise RpcResponseError instead of a KeyError."""
        rpc = ledger_with(lambda m, params: {"result": {"unexpected": 1}})
        with pytest.raises(RpcResponseError, match="Unexpected"):
            run(call(rpc, method, *args))

    def test_result_not_an_object(self):
        """Should raise RpcResponseError when the result is a bare value."""
        rpc = ledger_with(lambda method, params: {"result": [1, 2]})
        with pytest.raises(RpcResponseError):
            run(call(rpc, "get_latest_blockhash"))

    def test_bad_account_value(self):
        """Should raise RpcResponseError for undecodable account fields."""
        def handler(method, params):
            return {"result": {"context": {"slot": 1}, "value": {
                "lamports": 1,
                "data": ["not base64!", "base64"],
                "owner": str(OWNER),
            }}}

        with pytest.raises(RpcResponseError):
            run(call(ledger_with(handler), "get_account_info", OWNER))

    def test_status_count_mismatch(self):
        """Should refuse a status list that does not match the request."""
        rpc = ledger_with(lambda method, params: {"result": {"context": {"slot": 1}, "value": []}})
        with pytest.raises(RpcResponseError):
            run(call(rpc, "get_signature_statuses", ["a", "b"]))

    def test_action_ends_in_error(self, alice, mint, policy, goal_hash):
        """Should end an action in Error when the node answers nonsense."""
        rpc = ledger_with(lambda method, params: {"result": {"unexpected": 1}})
        seen = []

        async def scenario():
            async with rpc:
                actions = EscrowActions(rpc, alice, token_mint=mint, policy=policy)
                actions.subscribe(seen.append)
                return await actions.open_stake(goal_hash, 5)

        result = run(scenario())
        assert result.phase == Phase.ERROR
        assert result.error.kind == "rpc"
        assert seen[-1].phase == Phase.ERROR
