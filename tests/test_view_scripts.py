import re
import unittest
from unittest import mock

import labelcheck
import labelcheck_core as core
from tests.helpers import SessionTestCase


def script_threshold(script: str) -> int:
    match = re.search(r"input\.value\.trim\(\)\.length >= (\d+)", script)
    if match is None:
        raise AssertionError("auto-submit threshold not found in script")
    return int(match.group(1))


class FeedbackScriptTests(unittest.TestCase):
    def test_repeated_feedback_produces_distinct_markup(self) -> None:
        first = labelcheck.build_feedback_script(core.FEEDBACK_ERROR, 1)
        second = labelcheck.build_feedback_script(core.FEEDBACK_ERROR, 2)

        self.assertNotEqual(first, second)
        self.assertEqual(first.replace("= 1;", "= 2;", 1), second)

    def test_presets_reach_the_oscillator(self) -> None:
        success = labelcheck.build_feedback_script(core.FEEDBACK_SUCCESS, 1)
        error = labelcheck.build_feedback_script(core.FEEDBACK_ERROR, 1)

        self.assertIn("oscillator.frequency.value = 800;", success)
        self.assertIn('oscillator.type = "sine";', success)
        self.assertIn("oscillator.frequency.value = 200;", error)
        self.assertIn('oscillator.type = "sawtooth";', error)

    def test_render_nonce_increments_per_key(self) -> None:
        with mock.patch.object(labelcheck.st, "session_state", {}):
            self.assertEqual(labelcheck.next_render_nonce(labelcheck.FEEDBACK_NONCE_STATE_KEY), 1)
            self.assertEqual(labelcheck.next_render_nonce(labelcheck.FEEDBACK_NONCE_STATE_KEY), 2)
            self.assertEqual(labelcheck.next_render_nonce(labelcheck.SCAN_NONCE_STATE_KEY), 1)


class AutoSubmitScriptTests(unittest.TestCase):
    def test_each_scan_remounts_and_refocuses_the_input(self) -> None:
        first = labelcheck.build_autosubmit_script(8, 0)
        second = labelcheck.build_autosubmit_script(8, 1)

        self.assertNotEqual(first, second)
        self.assertIn("input.focus()", second)
        self.assertIn(f'aria-label="{labelcheck.SEARCH_INPUT_LABEL}"', second)

    def test_threshold_matches_should_auto_submit(self) -> None:
        for configured in (8, "12", 0, 500, "bad"):
            threshold = script_threshold(labelcheck.build_autosubmit_script(configured, 0))

            self.assertTrue(core.should_auto_submit("X" * threshold, configured))
            self.assertFalse(core.should_auto_submit("X" * (threshold - 1), configured))

    def test_debounce_uses_core_constant(self) -> None:
        script = labelcheck.build_autosubmit_script(8, 0)

        self.assertIn(f"input.blur(), {core.AUTO_SUBMIT_DEBOUNCE_MS})", script)


class ScanSubmitHandlerTests(SessionTestCase, unittest.TestCase):
    def test_each_submit_advances_the_scan_nonce(self) -> None:
        self.import_rows()
        state = {labelcheck.SESSION_STATE_KEY: self.session, labelcheck.SEARCH_INPUT_STATE_KEY: "a1"}

        with mock.patch.object(labelcheck.st, "session_state", state):
            labelcheck.handle_scan_submit()
            state[labelcheck.SEARCH_INPUT_STATE_KEY] = "a1"
            labelcheck.handle_scan_submit()

        self.assertEqual(state[labelcheck.SCAN_NONCE_STATE_KEY], 2)
        self.assertEqual(state[labelcheck.SEARCH_INPUT_STATE_KEY], "")
        self.assertEqual(state[labelcheck.SEARCH_OUTCOME_STATE_KEY], (core.OUTCOME_DUPLICATE, "A1"))
        self.assertEqual(self.feedback, [core.FEEDBACK_SUCCESS, core.FEEDBACK_ERROR])


if __name__ == "__main__":
    unittest.main()
