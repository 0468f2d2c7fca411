import asyncio
import logging
from functools import partial
from time import perf_counter
from typing import Any, Awaitable, Callable

import rio_bench.constants as C
from rio_bench.accounts import AccountPool, NonceTracker, Signer, derive_keypair
from rio_bench.batch import Batch, plan_batches
from rio_bench.chain import Call, ChainClient, StorageItem, probe_node
from rio_bench.config import storage_target
from rio_bench.errors import CompletionTimeout, NodeUnavailable, PhaseFailed, SubmissionError, SubmissionUncertain
from rio_bench.report import PhaseReport, RunReport
from rio_bench.watchers import changed_from, increased_past, watch_until

log = logging.getLogger("rio_bench.driver")

# submit_one(i) submits the extrinsic for account i and returns the watcher to await
SubmitOne = Callable[[int], Awaitable[Awaitable[Any]]]


class Benchmark:
    """Drives one benchmark run against a chain.

    Phases run batch by batch. Inside a phase, extrinsics are submitted in account
    index order without waiting on each other; their completion watchers are awaited
    together before the phase returns. At most ``max_in_flight`` watchers are open
    at once.

    The funding account's nonce is tracked locally, so nothing else may submit from
    that account during the run.
    """

    def __init__(
        self,
        config: dict,
        chain: ChainClient,
        *,
        scenario: C.Scenario | str | None = None,
        derive: Callable[[str], Signer] | None = None,
    ):
        self.config = config
        self.chain = chain
        self.scenario = C.Scenario(scenario or config["scenario"])

        derive = derive or partial(derive_keypair, ss58_format=config["node"]["ss58_format"])
        self.funding = derive(config["funding_account"]["uri"])
        self.accounts = AccountPool(prefix=config["accounts"]["uri_prefix"][self.scenario], derive=derive)
        self.nonce = NonceTracker(self.funding.ss58_address)

        bench = config["bench"]
        self.total = int(config["accounts"]["total"])
        self.per_loop = int(config["accounts"]["per_loop"])
        self.amount = int(bench["amount"])
        self.watch_timeout = float(bench["watch_timeout"])
        if self.total < 0 or self.per_loop <= 0 or int(bench["max_in_flight"]) < 0:
            raise ValueError(
                f"need total >= 0, per_loop > 0 and max_in_flight >= 0, "
                f"got {self.total}, {self.per_loop}, {bench['max_in_flight']}"
            )
        self.max_in_flight = int(bench["max_in_flight"]) or self.per_loop
        self._slots = asyncio.Semaphore(self.max_in_flight)

        self.report = RunReport(scenario=str(self.scenario), total=self.total, per_loop=self.per_loop)

    # ---- storage items ---------------------------------------------------

    def _nonce_item(self, address: str) -> StorageItem:
        return StorageItem(*storage_target(self.config, "account_nonce"), (address,))

    def _balance_item(self, address: str) -> StorageItem:
        return StorageItem(*storage_target(self.config, "free_balance"), (address,))

    def _asset_item(self, asset_id: int, address: str) -> StorageItem:
        return StorageItem(*storage_target(self.config, "asset_balance"), (asset_id, address))

    async def _fetch_nonce(self, address: str) -> int:
        return int(await self.chain.query(self._nonce_item(address)) or 0)

    # ---- fan-out ---------------------------------------------------------

    async def _settle(self, report: PhaseReport, i: int, watch: Awaitable[Any]) -> C.Outcome:
        try:
            await watch
            outcome = C.Outcome.SUCCEEDED
        except CompletionTimeout as e:
            log.warning("%s: account %s %s", report.phase, i, e)
            outcome = C.Outcome.TIMED_OUT
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("%s: watcher for account %s failed: %s", report.phase, i, e)
            outcome = C.Outcome.FAILED
        finally:
            self._slots.release()
        report.record(outcome)
        return outcome

    async def _fan_out(self, phase: C.Phase, batch: Batch, submit_one: SubmitOne) -> PhaseReport:
        report = self.report.add(PhaseReport(phase=phase, batch=batch.index, start=batch.start, end=batch.end))
        settling: list[asyncio.Task] = []
        then = perf_counter()
        try:
            for i in batch:
                await self._slots.acquire()
                try:
                    watch = await submit_one(i)
                except SubmissionError as e:
                    self._slots.release()
                    log.error("%s: submission for account %s failed: %s", phase, i, e)
                    report.record(C.Outcome.FAILED)
                    continue
                except BaseException:
                    self._slots.release()
                    raise
                settling.append(asyncio.create_task(self._settle(report, i, watch), name=f"{phase}-{i}"))
            await asyncio.gather(*settling)
        except BaseException as e:
            report.error = f"{type(e).__name__}: {e}"
            raise
        finally:
            for t in settling:
                if not t.done():
                    t.cancel()
            report.elapsed = perf_counter() - then

        if not report.ok:
            raise PhaseFailed(report)
        return report

    async def _submit(self, phase: C.Phase, i: int, call: Call, signer: Signer, nonce: int) -> None:
        """Submit one extrinsic. An unanswered submission counts as sent; its watcher decides."""
        try:
            await self.chain.submit(call, signer, nonce=nonce)
        except SubmissionUncertain as e:
            log.warning("%s: account %s submission unconfirmed, nonce %s stays spent: %s", phase, i, nonce, e)

    async def _from_funding(
        self,
        phase: C.Phase,
        batch: Batch,
        make: Callable[[str], tuple[StorageItem, Call]],
    ) -> PhaseReport:
        """Funding-account extrinsic per account, completion on a storage value change."""
        await self.nonce.sync(self._fetch_nonce)
        self.accounts.ensure(batch.end)
        batch_address: list[str] = []

        async def submit_one(i: int) -> Awaitable[Any]:
            recv_addr = self.accounts.address(i)
            item, call = make(recv_addr)
            prev = await self.chain.query(item)
            nonce = await self.nonce.alloc()
            try:
                await self._submit(phase, i, call, self.funding, nonce)
            except SubmissionError:
                await self.nonce.release(nonce)
                raise
            batch_address.append(recv_addr)
            return watch_until(self.chain, item, changed_from(prev), timeout=self.watch_timeout)

        try:
            return await self._fan_out(phase, batch, submit_one)
        finally:
            log.debug("%s %s: %s", phase, batch, batch_address)

    async def _from_account(
        self,
        phase: C.Phase,
        batch: Batch,
        make: Callable[[Signer], Call],
    ) -> PhaseReport:
        """Self-signed extrinsic per account, completion when its own nonce goes up."""
        self.accounts.ensure(batch.end)

        async def submit_one(i: int) -> Awaitable[Any]:
            signer = self.accounts[i]
            item = self._nonce_item(signer.ss58_address)
            prev = int(await self.chain.query(item) or 0)
            await self._submit(phase, i, make(signer), signer, prev)
            return watch_until(self.chain, item, increased_past(prev), timeout=self.watch_timeout)

        return await self._fan_out(phase, batch, submit_one)

    # ---- phases ----------------------------------------------------------

    async def create_loan_package(self) -> PhaseReport:
        params = dict(self.config["loan"]["create_package"])
        funding_addr = self.funding.ss58_address

        async def submit_one(i: int) -> Awaitable[Any]:
            item = self._nonce_item(funding_addr)
            prev = int(await self.chain.query(item) or 0)
            await self._submit(C.Phase.CREATE_PACKAGE, i, Call("RioLoan", "create_package", params), self.funding, prev)
            return watch_until(self.chain, item, increased_past(prev), timeout=self.watch_timeout)

        report = await self._fan_out(C.Phase.CREATE_PACKAGE, Batch(index=0, start=0, end=1), submit_one)
        await self.nonce.sync(self._fetch_nonce)
        return report

    async def fund_accounts(self, batch: Batch, amount: int) -> PhaseReport:
        if self.scenario == C.Scenario.PURE_TPS:
            asset_id = self.config["assets"]["native_id"]

            def make(dest: str) -> tuple[StorageItem, Call]:
                call = Call("RioAssets", "transfer", {"asset_id": asset_id, "to": dest, "amount": amount})
                return self._asset_item(asset_id, dest), call
        else:
            def make(dest: str) -> tuple[StorageItem, Call]:
                return self._balance_item(dest), Call("Balances", "transfer", {"dest": dest, "value": amount})

        return await self._from_funding(C.Phase.FUND, batch, make)

    async def mint_asset(self, batch: Batch, amount: int, asset_id: int | None = None) -> PhaseReport:
        asset_id = self.config["assets"]["sbtc_id"] if asset_id is None else asset_id

        def make(dest: str) -> tuple[StorageItem, Call]:
            call = Call("RioAssets", "mint", {"asset_id": asset_id, "to": dest, "amount": amount})
            return self._asset_item(asset_id, dest), call

        return await self._from_funding(C.Phase.MINT, batch, make)

    async def apply_for_loan(self, batch: Batch, amount: int, package_id: int) -> PhaseReport:
        def make(_: Signer) -> Call:
            return Call("RioLoan", "apply", {"collateral_amount": amount, "loan_amount": 0, "package_id": package_id})

        return await self._from_account(C.Phase.APPLY_LOAN, batch, make)

    async def transfer_back(self, batch: Batch, amount: int) -> PhaseReport:
        asset_id = self.config["assets"]["native_id"]
        funding_addr = self.funding.ss58_address

        def make(_: Signer) -> Call:
            return Call("RioAssets", "transfer", {"asset_id": asset_id, "to": funding_addr, "amount": amount})

        return await self._from_account(C.Phase.TRANSFER_BACK, batch, make)

    # ---- scenarios -------------------------------------------------------

    async def _timed(self, description: str, op: Callable[..., Awaitable[PhaseReport]], *args) -> PhaseReport:
        log.info(C.HORIZON)
        log.info(description)
        report = await op(*args)
        log.info(f"Done, {report.succeeded} transactions, {round(report.elapsed * 1000)} milliseconds ({report.tps:.1f} tps)")
        log.info(C.HORIZON)
        return report

    async def run_loan(self) -> None:
        amount = self.amount
        mint_amount = amount * self.config["assets"]["mint_multiplier"]
        loan = self.config["loan"]

        log.info("%s create loan packages %s", C.HORIZON, C.HORIZON)
        await self.create_loan_package()

        log.info(f"{C.HORIZON} Create {self.total} testing accounts {C.HORIZON}")
        for batch in plan_batches(self.total, self.per_loop):
            await self._timed(
                f"creating {len(batch)} accounts with balance {amount / C.UNIT}",
                self.fund_accounts, batch, amount,
            )
            await self._timed(
                f"mint {mint_amount / C.UNIT} SBTC for each account",
                self.mint_asset, batch, mint_amount,
            )
            await self._timed(
                "applying for loan",
                self.apply_for_loan, batch, loan["apply_amount"], loan["package_id"],
            )

    async def run_pure_tps(self) -> None:
        batches = plan_batches(self.total, self.per_loop)
        back = self.config["assets"]["transfer_back_amount"]

        log.info(f"{C.HORIZON} Create {self.total} testing accounts {C.HORIZON}")
        for batch in batches:
            await self._timed(
                f"creating {len(batch)} accounts with balance {self.amount / C.UNIT}",
                self.fund_accounts, batch, self.amount,
            )

        for batch in batches:
            await self._timed(
                f"transferring {back / C.UNIT} back from {len(batch)} accounts",
                self.transfer_back, batch, back,
            )

    async def run(self) -> RunReport:
        """Run the configured scenario and return its report. Never raises for run failures."""
        log.info(
            "Starting %s benchmark: %s accounts, %s per loop, %s in flight, watch timeout %ss",
            self.scenario, self.total, self.per_loop, self.max_in_flight, self.watch_timeout,
        )
        try:
            if self.scenario == C.Scenario.LOAN:
                await self.run_loan()
            else:
                await self.run_pure_tps()
        except asyncio.CancelledError as e:
            log.warning("Benchmark cancelled")
            self.report.finish(e)
            raise
        except PhaseFailed as e:
            log.error("Benchmark aborted: %s", e)
            self.report.finish(e)
        except Exception as e:
            log.exception("Benchmark failed: %s", e)
            self.report.finish(e)
        else:
            self.report.finish()

        log.info("Benchmark %s: %s", self.report.status, self.report.totals())
        return self.report


async def run_benchmark(
    config: dict,
    *,
    scenario: C.Scenario | str | None = None,
    connect: Callable[[dict], Awaitable[ChainClient]] | None = None,
) -> RunReport:
    """Probe the node, connect, run one benchmark and disconnect."""
    scenario = C.Scenario(scenario or config["scenario"])
    node = config["node"]
    if connect is None:
        from rio_bench.chain import SubstrateChain
        connect = SubstrateChain.connect

    def failed(e: Exception) -> RunReport:
        accounts = config["accounts"]
        return RunReport(scenario=str(scenario), total=accounts["total"], per_loop=accounts["per_loop"]).finish(e)

    try:
        if node.get("probe", True):
            await probe_node(node["rpc_url"], node["probe_retries"], node["probe_delay"])
        chain = await connect(config)
    except NodeUnavailable as e:
        log.error("Node unavailable: %s", e)
        return failed(e)

    try:
        try:
            bench = Benchmark(config, chain, scenario=scenario)
        except ValueError as e:
            log.error("Invalid benchmark settings: %s", e)
            return failed(e)
        return await bench.run()
    finally:
        await chain.close()
