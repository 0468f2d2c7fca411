"""
Tests for the benchmark driver against the in-memory chain.

Tests:
- Loan scenario: package first, then fund -> mint -> apply per batch, in batch order
- A phase never starts before the previous phase of the same batch has settled
- Funding submissions go out in account index order with consecutive nonces
- A dropped extrinsic times out, fails the phase and stops the run
- A rejected submission is counted as failed and does not leave a nonce gap
- An unanswered submission keeps its nonce and is settled by its watcher
- max_in_flight bounds the number of open watchers
- Pure-tps scenario: fund all batches, then transfer back from every account
- run_benchmark: connect/close handling and unreachable nodes
"""

import asyncio
import zlib

import pytest

import rio_bench.constants as C
from rio_bench.config import deep_update
from rio_bench.driver import Benchmark, run_benchmark
from rio_bench.errors import NodeUnavailable

from conftest import FakeChain, FakeKeypair


def _bench(config, chain, **kw) -> Benchmark:
    return Benchmark(config, chain, derive=FakeKeypair, **kw)


def _addr(prefix: str, i: int) -> str:
    return FakeKeypair(f"{prefix}{i}").ss58_address


def _jitter(call, signer) -> float:
    # deterministic, uneven per-account delays so effects land out of order
    target = call.params.get("dest") or call.params.get("to") or signer
    return (zlib.crc32(f"{call}{target}".encode()) % 20) / 1000


class TestLoanScenario:
    def test_runs_all_phases(self, bench_config):
        chain = FakeChain(effect_delay=_jitter)
        report = asyncio.run(_bench(bench_config, chain).run())

        assert report.status == "ok"
        assert report.exit_code == 0
        assert [(str(p.phase), p.batch) for p in report.phases] == [
            ("create_package", 0),
            ("fund", 0), ("mint", 0), ("apply_loan", 0),
            ("fund", 1), ("mint", 1), ("apply_loan", 1),
            ("fund", 2), ("mint", 2), ("apply_loan", 2),
        ]
        assert report.totals()["fund"] == {"submitted": 10, "succeeded": 10, "timed_out": 0, "failed": 0}
        assert len(chain.submitted_calls("RioLoan.create_package")) == 1
        assert len(chain.submitted_calls("RioLoan.apply")) == 10

    def test_call_parameters(self, bench_config):
        chain = FakeChain()
        asyncio.run(_bench(bench_config, chain).run())
        prefix = bench_config["accounts"]["uri_prefix"]["loan"]
        amount = bench_config["bench"]["amount"]

        (create, _, _), = chain.submitted_calls("RioLoan.create_package")
        assert create.params == {"terms": 10, "interest_rate_hourly": 100, "min": 1}

        fund, signer, _ = chain.submitted_calls("Balances.transfer")[0]
        assert signer == FakeKeypair(bench_config["funding_account"]["uri"]).ss58_address
        assert fund.params == {"dest": _addr(prefix, 0), "value": amount}

        mint, _, _ = chain.submitted_calls("RioAssets.mint")[0]
        assert mint.params == {"asset_id": bench_config["assets"]["sbtc_id"], "to": _addr(prefix, 0), "amount": amount * 100}

        apply, signer, nonce = chain.submitted_calls("RioLoan.apply")[3]
        assert signer == _addr(prefix, 3)
        assert nonce == 0
        assert apply.params == {"collateral_amount": C.UNIT, "loan_amount": 0, "package_id": 1}

    def test_funded_balances_land_on_derived_accounts(self, bench_config):
        chain = FakeChain()
        asyncio.run(_bench(bench_config, chain).run())
        prefix = bench_config["accounts"]["uri_prefix"]["loan"]
        amount = bench_config["bench"]["amount"]
        sbtc = bench_config["assets"]["sbtc_id"]

        for i in range(10):
            assert chain.get("Balances", "FreeBalance", _addr(prefix, i)) == amount
            assert chain.get("RioAssets", "FreeBalance", sbtc, _addr(prefix, i)) == amount * 100

    def test_phases_of_a_batch_never_overlap(self, bench_config):
        chain = FakeChain(effect_delay=_jitter)
        asyncio.run(_bench(bench_config, chain).run())
        prefix = bench_config["accounts"]["uri_prefix"]["loan"]

        def position(kind, name, target):
            return chain.events.index((kind, name, target))

        for start, end in [(0, 4), (4, 8), (8, 10)]:
            targets = [_addr(prefix, i) for i in range(start, end)]
            last_fund = max(position("apply", "Balances.transfer", t) for t in targets)
            first_mint = min(position("submit", "RioAssets.mint", t) for t in targets)
            last_mint = max(position("apply", "RioAssets.mint", t) for t in targets)
            first_apply = min(position("submit", "RioLoan.apply", t) for t in targets)

            assert last_fund < first_mint
            assert last_mint < first_apply

    def test_next_batch_waits_for_previous_batch(self, bench_config):
        chain = FakeChain(effect_delay=_jitter)
        asyncio.run(_bench(bench_config, chain).run())
        prefix = bench_config["accounts"]["uri_prefix"]["loan"]

        last_apply_b0 = max(chain.events.index(("apply", "RioLoan.apply", _addr(prefix, i))) for i in range(4))
        first_fund_b1 = chain.events.index(("submit", "Balances.transfer", _addr(prefix, 4)))

        assert last_apply_b0 < first_fund_b1


class TestFundingOrder:
    def test_index_order_and_consecutive_nonces(self, bench_config):
        conf = deep_update(bench_config, {"accounts": {"total": 1000, "per_loop": 200}})
        chain = FakeChain()
        bench = _bench(conf, chain)
        report = asyncio.run(bench.run())
        prefix = conf["accounts"]["uri_prefix"]["loan"]

        assert report.status == "ok"
        funds = [p for p in report.phases if p.phase == C.Phase.FUND]
        assert [(p.start, p.end, p.succeeded) for p in funds] == [
            (0, 200, 200), (200, 400, 200), (400, 600, 200), (600, 800, 200), (800, 1000, 200),
        ]
        dests = [call.params["dest"] for call, _, _ in chain.submitted_calls("Balances.transfer")]
        assert dests == [_addr(prefix, i) for i in range(1000)]

        funding = bench.funding.ss58_address
        nonces = [nonce for _, signer, nonce in chain.submitted if signer == funding]
        assert nonces == list(range(len(nonces)))
        assert len(nonces) == 1 + 1000 + 1000

    def test_rejected_submission_leaves_no_nonce_gap(self, bench_config):
        prefix = bench_config["accounts"]["uri_prefix"]["loan"]
        rejected = _addr(prefix, 2)
        chain = FakeChain(reject=lambda call, signer: call.params.get("dest") == rejected)
        bench = _bench(bench_config, chain)
        report = asyncio.run(bench.run())

        fund = report.phases[-1]
        assert (str(fund.phase), fund.batch) == ("fund", 0)
        assert (fund.succeeded, fund.failed, fund.timed_out) == (3, 1, 0)
        assert report.status == "partial"
        assert "PhaseFailed" in report.error

        funding = bench.funding.ss58_address
        nonces = [nonce for _, signer, nonce in chain.submitted if signer == funding]
        assert nonces == [0, 1, 2, 3]

    def test_unanswered_submission_keeps_its_nonce(self, bench_config):
        prefix = bench_config["accounts"]["uri_prefix"]["loan"]
        slow = _addr(prefix, 0)
        chain = FakeChain(unanswered=lambda call, signer: call.params.get("dest") == slow)
        bench = _bench(bench_config, chain)
        report = asyncio.run(bench.run())

        # the transfer landed, so its watcher counts it as a success
        assert report.status == "ok"
        assert report.totals()["fund"]["succeeded"] == 10

        funding = bench.funding.ss58_address
        nonces = [nonce for _, signer, nonce in chain.submitted if signer == funding]
        assert nonces == list(range(len(nonces)))


class TestFailures:
    def test_dropped_extrinsic_times_out_and_stops_run(self, bench_config):
        conf = deep_update(bench_config, {"bench": {"watch_timeout": 0.2}})
        prefix = conf["accounts"]["uri_prefix"]["loan"]
        lost = _addr(prefix, 5)
        chain = FakeChain(drop=lambda call, signer: call.params.get("dest") == lost)

        report = asyncio.run(_bench(conf, chain).run())

        assert report.status == "partial"
        assert report.exit_code == 1
        fund = report.phases[-1]
        assert (str(fund.phase), fund.batch) == ("fund", 1)
        assert (fund.succeeded, fund.timed_out) == (3, 1)
        # batch 1 never reaches mint
        assert len(chain.submitted_calls("RioAssets.mint")) == 4
        assert chain.open_subscriptions == 0

    def test_package_timeout_fails_run(self, bench_config):
        conf = deep_update(bench_config, {"bench": {"watch_timeout": 0.1}})
        chain = FakeChain(drop=lambda call, signer: str(call) == "RioLoan.create_package")

        report = asyncio.run(_bench(conf, chain).run())

        assert report.status == "failed"
        assert report.exit_code == 2
        assert chain.submitted_calls("Balances.transfer") == []

    def test_cancel_finishes_report_and_reraises(self, bench_config):
        conf = deep_update(bench_config, {"bench": {"watch_timeout": 0}})
        chain = FakeChain(drop=lambda call, signer: str(call) == "Balances.transfer")

        async def go():
            bench = _bench(conf, chain)
            task = asyncio.create_task(bench.run())
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return bench.report

        report = asyncio.run(go())
        assert report.finished_at is not None
        assert "CancelledError" in report.error
        assert chain.open_subscriptions == 0


class TestInFlightBound:
    def test_negative_bound_refused(self, bench_config):
        conf = deep_update(bench_config, {"bench": {"max_in_flight": -1}})

        with pytest.raises(ValueError):
            _bench(conf, FakeChain())

    @pytest.mark.parametrize("limit", [1, 2, 3])
    def test_open_watchers_bounded(self, bench_config, limit):
        conf = deep_update(bench_config, {"bench": {"max_in_flight": limit}})
        chain = FakeChain(effect_delay=0.01)

        report = asyncio.run(_bench(conf, chain).run())

        assert report.status == "ok"
        assert chain.max_open_subscriptions <= limit

    def test_default_bound_is_per_loop(self, bench_config):
        bench = _bench(bench_config, FakeChain())

        assert bench.max_in_flight == bench_config["accounts"]["per_loop"]


class TestPureTps:
    def test_fund_then_transfer_back(self, bench_config):
        chain = FakeChain(effect_delay=_jitter)
        bench = _bench(bench_config, chain, scenario=C.Scenario.PURE_TPS)
        report = asyncio.run(bench.run())
        prefix = bench_config["accounts"]["uri_prefix"]["pure-tps"]

        assert report.status == "ok"
        assert [(str(p.phase), p.batch) for p in report.phases] == [
            ("fund", 0), ("fund", 1), ("fund", 2),
            ("transfer_back", 0), ("transfer_back", 1), ("transfer_back", 2),
        ]
        funds = chain.submitted_calls("RioAssets.transfer")[:10]
        assert [call.params["to"] for call, _, _ in funds] == [_addr(prefix, i) for i in range(10)]
        assert all(call.params["asset_id"] == bench_config["assets"]["native_id"] for call, _, _ in funds)

        backs = chain.submitted_calls("RioAssets.transfer")[10:]
        funding = bench.funding.ss58_address
        assert [signer for _, signer, _ in backs] == [_addr(prefix, i) for i in range(10)]
        assert all(call.params["to"] == funding for call, _, _ in backs)
        assert chain.submitted_calls("Balances.transfer") == []


class TestRunBenchmark:
    def test_connects_runs_and_closes(self, bench_config, monkeypatch):
        monkeypatch.setattr("rio_bench.driver.derive_keypair", lambda uri, ss58_format=42: FakeKeypair(uri))
        chain = FakeChain()

        async def connect(conf):
            return chain

        report = asyncio.run(run_benchmark(bench_config, connect=connect))

        assert report.status == "ok"
        assert chain.closed

    def test_unreachable_node(self, bench_config):
        async def connect(conf):
            raise NodeUnavailable("ws://127.0.0.1:9944 refused")

        report = asyncio.run(run_benchmark(bench_config, connect=connect))

        assert report.status == "failed"
        assert report.exit_code == 2
        assert report.phases == []
        assert "NodeUnavailable" in report.error

    def test_invalid_settings_reported_and_chain_closed(self, bench_config, monkeypatch):
        monkeypatch.setattr("rio_bench.driver.derive_keypair", lambda uri, ss58_format=42: FakeKeypair(uri))
        conf = deep_update(bench_config, {"bench": {"max_in_flight": -1}})
        chain = FakeChain()

        async def connect(conf):
            return chain

        report = asyncio.run(run_benchmark(conf, connect=connect))

        assert report.exit_code == 2
        assert report.error.startswith("ValueError")
        assert chain.closed
