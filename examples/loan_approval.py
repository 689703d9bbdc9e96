"""
Loan approval flow with a conditional branch, retries and a paused run

Shows:
- Binding service beans to steps by name
- A CONDITIONAL step choosing between risk assessment and auto-approval
- A flaky credit bureau call retried with a delay
- Pausing and resuming an asynchronous execution
- Reading history back from an SQLite store

Run:
    PYTHONPATH=src python3 examples/loan_approval.py
"""

import asyncio
import logging
import random

from pysimpleflow import (
    FlowBuilder,
    FlowEngine,
    HandlerRegistry,
    SqliteExecutionStore,
    StepDefinition,
)

logging.basicConfig(level=logging.WARNING)


# ============================================================================
# SERVICES
# ============================================================================


class LoanService:
    def validate(self, applicant: str, amount: int) -> str:
        if amount <= 0:
            raise ValueError(f"invalid amount {amount}")
        return f"{applicant} requested {amount}"

    async def credit_score(self, applicant: str) -> int:
        await asyncio.sleep(0.05)
        if random.random() < 0.3:
            raise ConnectionError("credit bureau unavailable")
        return 600 + hash(applicant) % 200

    def risk_assess(self, amount: int, credit_score_result: int) -> str:
        return "manual-review" if credit_score_result < 700 else "approved"

    def auto_approve(self) -> str:
        return "approved"

    def notify(self, applicant: str) -> str:
        print(f"  notified {applicant}")
        return "sent"


# ============================================================================
# FLOW
# ============================================================================


def loan_flow():
    return (
        FlowBuilder("loan-approval")
        .name("Loan approval")
        .step("validate", bean="loans", method="validate")
        .step(
            "credit_score",
            bean="loans",
            method="credit_score",
            depends_on=["validate"],
            max_retries=3,
            retry_delay_ms=50,
        )
        .conditional(
            "decide",
            condition="amount > 1000",
            true_steps=[
                StepDefinition("risk", parameters={"bean": "loans", "method": "risk_assess"})
            ],
            false_steps=[
                StepDefinition("auto", parameters={"bean": "loans", "method": "auto_approve"})
            ],
            depends_on=["credit_score"],
        )
        .step("notify", bean="loans", method="notify", depends_on=["decide"])
        .build()
    )


# ============================================================================
# MAIN
# ============================================================================


async def main():
    store = await SqliteExecutionStore.in_memory()
    registry = HandlerRegistry().register_bean("loans", LoanService())

    async with FlowEngine(registry).with_store(store) as engine:
        engine.register(loan_flow())

        print("Blocking executions:")
        for applicant, amount in (("ada", 500), ("grace", 5000)):
            result = await engine.execute("loan-approval", {"applicant": applicant, "amount": amount})
            decision = result.output.get("risk_result") or result.output.get("auto_result")
            retries = result.get_step_result("credit_score").retry_count
            print(f"  {applicant}: {result.status} decision={decision} (retries: {retries})")

        print("Paused execution:")
        handle = engine.execute_async("loan-approval", {"applicant": "linus", "amount": 50})
        engine.pause(handle.execution_id)
        print(f"  status: {engine.status(handle.execution_id)}")
        await asyncio.sleep(0.1)
        engine.resume(handle.execution_id)
        result = await handle
        print(f"  linus: {result.status} in {result.duration_ms}ms")

        history = await store.get_step_results(result.execution_id)
        print(f"  stored steps: {[s.step_id for s in history]}")

    await store.close()


if __name__ == "__main__":
    asyncio.run(main())
