from __future__ import annotations

import unittest

from blaze_backend.engine import ApplyCancelled
from blaze_backend.self_heal import apply_with_self_healing, is_retryable_apply_error
from blaze_backend.types import ApplyResult


class _ScriptedApply:
    def __init__(self, results: list[ApplyResult | Exception]):
        self._results = list(results)
        self.payloads: list[str] = []

    async def __call__(self, payload: str) -> ApplyResult:
        self.payloads.append(payload)
        item = self._results.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


WRAPPED_RESPONSE = (
    "Sure, here is the fix:\n\n"
    '<blaze-write path="src/a.ts">export const a = 1;</blaze-write>\n\n'
    "Let me know if you need anything else."
)


class SelfHealingTests(unittest.IsolatedAsyncioTestCase):
    async def test_initial_success_records_single_attempt(self) -> None:
        apply = _ScriptedApply([ApplyResult(updated_files=True)])
        outcome = await apply_with_self_healing("  " + WRAPPED_RESPONSE + "\n", apply)

        self.assertEqual(len(outcome.attempts), 1)
        self.assertEqual(outcome.attempts[0].strategy, "initial")
        self.assertFalse(outcome.recovered_by_self_healing)
        self.assertEqual(apply.payloads, [WRAPPED_RESPONSE])

    async def test_prose_wrapped_failure_retries_with_actionable_tags(self) -> None:
        apply = _ScriptedApply([ApplyResult(error="Unexpected text in response"), ApplyResult(updated_files=True)])
        outcome = await apply_with_self_healing(WRAPPED_RESPONSE, apply)

        self.assertEqual([a.strategy for a in outcome.attempts], ["initial", "retry-actionable-tags"])
        self.assertEqual(apply.payloads[1], '<blaze-write path="src/a.ts">export const a = 1;</blaze-write>')
        self.assertNotIn("Sure", apply.payloads[1])
        self.assertTrue(outcome.recovered_by_self_healing)
        self.assertTrue(outcome.result.updated_files)

    async def test_lock_contention_retries_same_payload(self) -> None:
        payload = '<blaze-write path="src/a.ts">x</blaze-write>'
        apply = _ScriptedApply(
            [
                ApplyResult(error="fatal: Unable to create '/repo/.git/index.lock': File exists. another git process"),
                ApplyResult(updated_files=True),
            ]
        )
        outcome = await apply_with_self_healing(payload, apply)

        self.assertEqual([a.strategy for a in outcome.attempts], ["initial", "retry-same-payload"])
        self.assertEqual(apply.payloads, [payload, payload])
        self.assertTrue(outcome.recovered_by_self_healing)

    async def test_repeated_lock_contention_exhausts_budget(self) -> None:
        payload = '<blaze-write path="src/a.ts">x</blaze-write>'
        apply = _ScriptedApply(
            [
                ApplyResult(error="fatal: Unable to create '/repo/.git/index.lock': File exists."),
                ApplyResult(error="fatal: Unable to create '/repo/.git/index.lock': File exists. (again)"),
            ]
        )
        outcome = await apply_with_self_healing(payload, apply)

        self.assertEqual([a.strategy for a in outcome.attempts], ["initial", "retry-same-payload"])
        self.assertEqual(apply.payloads, [payload, payload])
        self.assertFalse(outcome.recovered_by_self_healing)
        self.assertEqual(outcome.result.error, outcome.attempts[-1].error)
        self.assertIn("(again)", outcome.result.error or "")

    async def test_non_retryable_failure_is_not_retried(self) -> None:
        payload = '<blaze-search-replace path="a.ts">broken</blaze-search-replace>'
        apply = _ScriptedApply([ApplyResult(error="Search text not found in a.ts")])
        outcome = await apply_with_self_healing(payload, apply)

        self.assertEqual(len(outcome.attempts), 1)
        self.assertFalse(outcome.recovered_by_self_healing)
        self.assertEqual(outcome.result.error, "Search text not found in a.ts")

    async def test_failed_retry_reports_final_error(self) -> None:
        apply = _ScriptedApply([ApplyResult(error="first"), ApplyResult(error="EBUSY: resource busy")])
        outcome = await apply_with_self_healing(WRAPPED_RESPONSE, apply)

        self.assertEqual(len(outcome.attempts), 2)
        self.assertEqual(outcome.attempts[1].error, "EBUSY: resource busy")
        self.assertEqual(outcome.result.error, "EBUSY: resource busy")
        self.assertFalse(outcome.recovered_by_self_healing)

    async def test_larger_budget_falls_back_to_same_payload(self) -> None:
        apply = _ScriptedApply(
            [ApplyResult(error="bad prose"), ApplyResult(error="operation timed out"), ApplyResult(updated_files=True)]
        )
        outcome = await apply_with_self_healing(WRAPPED_RESPONSE, apply, max_attempts=3)

        self.assertEqual(
            [a.strategy for a in outcome.attempts],
            ["initial", "retry-actionable-tags", "retry-same-payload"],
        )
        self.assertEqual(apply.payloads[1], apply.payloads[2])
        self.assertTrue(outcome.recovered_by_self_healing)

    async def test_cancellation_is_never_retried(self) -> None:
        apply = _ScriptedApply([ApplyCancelled("stopped")])
        with self.assertRaises(ApplyCancelled):
            await apply_with_self_healing(WRAPPED_RESPONSE, apply)
        self.assertEqual(len(apply.payloads), 1)

    def test_transient_vocabulary(self) -> None:
        self.assertTrue(is_retryable_apply_error("cannot lock ref 'HEAD'"))
        self.assertTrue(is_retryable_apply_error("ENOTEMPTY: directory not empty"))
        self.assertTrue(is_retryable_apply_error("Resource temporarily unavailable"))
        self.assertFalse(is_retryable_apply_error("EBUSYX"))
        self.assertFalse(is_retryable_apply_error(None))
        self.assertFalse(is_retryable_apply_error("File does not exist: a.ts"))


if __name__ == "__main__":
    unittest.main()
