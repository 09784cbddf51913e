#!/usr/bin/env python3
"""
Tests for the bounded-concurrency translation queue.
Jobs are held in the active set with Event gates on the fake translator.
"""

import sys
import threading
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(Path(__file__).resolve().parent))

import unittest

from fakes import FakeStore, FakeTranslator, make_record
from voiceqc.core.constants import JobStatus, ProgressStage
from voiceqc.core.job_queue import TranslationQueue
from voiceqc.core.job_runner import RunOutcome
from voiceqc.core.progress import ProgressReporter

WAIT = 5.0


def _text(job_id: str) -> str:
    return f"Transcript of {job_id}."


class QueueTestCase(unittest.TestCase):

    max_concurrent = 2

    def setUp(self):
        self.store = FakeStore()
        self.translator = FakeTranslator()
        self.reporter = ProgressReporter()
        self.queue = TranslationQueue(self.store, self.translator, self.reporter,
                                      max_concurrent=self.max_concurrent)
        self.finished: list[tuple[str, str]] = []
        self.queue.on_job_finished = lambda job_id, outcome: self.finished.append((job_id, outcome))

    def tearDown(self):
        for gate in self.translator.gates.values():
            gate.set()
        self.queue.stop(wait=True, timeout=WAIT)

    def add(self, job_id: str, gated: bool = False) -> threading.Event | None:
        self.store.add(make_record(job_id, transcript=_text(job_id)))
        if gated:
            return self.translator.gate(_text(job_id))
        return None

    def wait_started(self, job_id: str):
        self.assertTrue(self.translator.started[_text(job_id)].wait(WAIT))

    def translated_order(self) -> list[str]:
        return [text for kind, text in self.translator.calls if kind == "text"]


class TestAdmission(QueueTestCase):

    def test_enqueue_runs_to_completion(self):
        self.add("d1")
        self.assertTrue(self.queue.enqueue("d1"))
        self.assertTrue(self.queue.wait_idle(WAIT))
        self.assertEqual(self.finished, [("d1", RunOutcome.COMPLETED)])
        self.assertEqual(self.store.saved["d1"][0].text, f"ru:{_text('d1')}")
        self.assertFalse(self.queue.is_in_queue("d1"))

    def test_duplicate_enqueue_is_noop(self):
        gate = self.add("d1", gated=True)
        self.assertTrue(self.queue.enqueue("d1"))
        self.assertFalse(self.queue.enqueue("d1"))
        self.assertFalse(self.queue.enqueue("d1", priority=99))
        gate.set()
        self.assertTrue(self.queue.wait_idle(WAIT))
        self.assertEqual(len(self.translated_order()), 1)

    def test_duplicate_of_waiting_job_is_noop(self):
        gates = [self.add(j, gated=True) for j in ("a", "b")]
        self.add("c")
        for job_id in ("a", "b", "c"):
            self.queue.enqueue(job_id)
        self.assertFalse(self.queue.enqueue("c"))
        self.assertEqual(self.queue.queue_status()['queue_length'], 1)
        for gate in gates:
            gate.set()
        self.assertTrue(self.queue.wait_idle(WAIT))

    def test_active_count_never_exceeds_limit(self):
        gates = {j: self.add(j, gated=True) for j in ("a", "b", "c", "d")}
        for job_id in gates:
            self.queue.enqueue(job_id)
        self.assertEqual(self.queue.queue_status(),
                         {'queue_length': 2, 'active_count': 2, 'total_active': 4})
        self.assertTrue(self.queue.is_active("a"))
        self.assertTrue(self.queue.is_active("b"))
        self.assertTrue(self.queue.is_queued("c"))
        self.assertFalse(self.queue.is_active("c"))

        gates["a"].set()
        self.wait_started("c")
        self.assertLessEqual(self.queue.queue_status()['active_count'], 2)
        self.assertTrue(self.queue.is_active("c"))
        self.assertFalse(self.queue.is_active("d"))

        for gate in gates.values():
            gate.set()
        self.assertTrue(self.queue.wait_idle(WAIT))
        self.assertEqual(len(self.store.saved), 4)

    def test_free_slot_admits_immediately(self):
        self.add("d1", gated=True)
        self.queue.enqueue("d1", priority=0)
        self.assertTrue(self.queue.is_active("d1"))
        self.assertEqual(self.queue.queue_position("d1"), 0)

        self.add("d2", gated=True)
        self.queue.enqueue("d2", priority=10)
        self.assertTrue(self.queue.is_active("d2"))
        self.assertEqual(self.queue.queue_position("d2"), 0)

    def test_queued_event_reports_position(self):
        gates = [self.add(j, gated=True) for j in ("a", "b")]
        self.add("c")
        events = []
        self.queue.subscribe("c", lambda job_id, ev: events.append(ev))
        for job_id in ("a", "b", "c"):
            self.queue.enqueue(job_id)
        self.assertEqual(events[0].stage, ProgressStage.QUEUED)
        self.assertIn("position 1", events[0].message)
        for gate in gates:
            gate.set()
        self.assertTrue(self.queue.wait_idle(WAIT))


class TestPriority(QueueTestCase):

    max_concurrent = 1

    def test_priority_order(self):
        gate = self.add("blocker", gated=True)
        self.queue.enqueue("blocker")
        for job_id, priority in (("p1", 1), ("p5", 5), ("p3", 3)):
            self.add(job_id)
            self.queue.enqueue(job_id, priority=priority)

        self.assertEqual(self.queue.queue_position("p5"), 1)
        self.assertEqual(self.queue.queue_position("p3"), 2)
        self.assertEqual(self.queue.queue_position("p1"), 3)

        gate.set()
        self.assertTrue(self.queue.wait_idle(WAIT))
        self.assertEqual(self.translated_order(),
                         [_text(j) for j in ("blocker", "p5", "p3", "p1")])

    def test_fifo_within_priority(self):
        gate = self.add("blocker", gated=True)
        self.queue.enqueue("blocker")
        for job_id in ("first", "second", "third"):
            self.add(job_id)
            self.queue.enqueue(job_id, priority=2)
        gate.set()
        self.assertTrue(self.queue.wait_idle(WAIT))
        self.assertEqual(self.translated_order()[1:],
                         [_text(j) for j in ("first", "second", "third")])

    def test_dequeue_only_removes_waiting(self):
        gate = self.add("blocker", gated=True)
        self.add("waiting")
        self.queue.enqueue("blocker")
        self.queue.enqueue("waiting")

        self.assertTrue(self.queue.dequeue("waiting"))
        self.assertFalse(self.queue.is_in_queue("waiting"))
        self.assertEqual(self.queue.queue_position("waiting"), 0)

        self.assertFalse(self.queue.dequeue("blocker"))
        self.assertTrue(self.queue.is_active("blocker"))

        gate.set()
        self.assertTrue(self.queue.wait_idle(WAIT))
        self.assertNotIn("waiting", self.store.saved)
        self.assertIn("blocker", self.store.saved)

    def test_clear_queue(self):
        gate = self.add("blocker", gated=True)
        self.queue.enqueue("blocker")
        for job_id in ("x", "y"):
            self.add(job_id)
            self.queue.enqueue(job_id)
        self.assertEqual(self.queue.clear_queue(), 2)
        self.assertEqual(self.queue.queue_status()['queue_length'], 0)
        gate.set()
        self.assertTrue(self.queue.wait_idle(WAIT))
        self.assertEqual(list(self.store.saved), ["blocker"])


class TestFailureIsolation(QueueTestCase):

    max_concurrent = 1

    def test_failed_job_frees_slot(self):
        self.add("bad")
        self.add("good")
        self.translator.errors[_text("bad")] = RuntimeError("provider exploded")
        self.queue.enqueue("bad", priority=5)
        self.queue.enqueue("good")
        self.assertTrue(self.queue.wait_idle(WAIT))
        self.assertEqual(dict(self.finished),
                         {"bad": RunOutcome.FAILED, "good": RunOutcome.COMPLETED})
        self.assertIn("provider exploded", self.store.failures["bad"])

    def test_crashing_runner_frees_slot(self):
        def factory(job_id, cancel_event):
            raise RuntimeError("cannot build runner")

        queue = TranslationQueue(self.store, self.translator, self.reporter,
                                 max_concurrent=1, runner_factory=factory)
        outcomes = []
        queue.on_job_finished = lambda job_id, outcome: outcomes.append(outcome)
        queue.enqueue("a")
        queue.enqueue("b")
        self.assertTrue(queue.wait_idle(WAIT))
        self.assertEqual(outcomes, [RunOutcome.FAILED, RunOutcome.FAILED])

    def test_missing_input_is_skipped(self):
        self.queue.enqueue("ghost")
        self.assertTrue(self.queue.wait_idle(WAIT))
        self.assertEqual(self.finished, [("ghost", RunOutcome.SKIPPED_MISSING_INPUT)])
        self.assertNotIn("ghost", self.store.failures)


class TestProgressIsolation(QueueTestCase):

    def test_events_routed_per_job(self):
        received: dict[str, list] = {"a": [], "b": []}
        for job_id in received:
            self.add(job_id)
            self.queue.subscribe(job_id, lambda jid, ev, own=job_id: received[own].append((jid, ev)))
        self.queue.enqueue("a")
        self.queue.enqueue("b")
        self.assertTrue(self.queue.wait_idle(WAIT))

        for job_id, events in received.items():
            self.assertTrue(events)
            self.assertTrue(all(jid == job_id for jid, _ in events))
            self.assertEqual(events[-1][1].stage, ProgressStage.COMPLETE)

    def test_unsubscribe(self):
        self.add("a")
        events = []
        self.queue.subscribe("a", lambda jid, ev: events.append(ev))
        self.queue.unsubscribe("a")
        self.queue.enqueue("a")
        self.assertTrue(self.queue.wait_idle(WAIT))
        self.assertEqual(events, [])


class TestLifecycle(QueueTestCase):

    max_concurrent = 1

    def test_stop_holds_queue_and_start_resumes(self):
        self.queue.stop()
        self.add("a")
        self.queue.enqueue("a")
        self.assertTrue(self.queue.is_queued("a"))
        self.assertFalse(self.queue.is_running())

        self.queue.start()
        self.assertTrue(self.queue.wait_idle(WAIT))
        self.assertIn("a", self.store.saved)

    def test_stop_cancels_active(self):
        self.add("a", gated=True)
        self.queue.enqueue("a")
        self.wait_started("a")
        self.queue.stop(wait=True, cancel_active=True, timeout=WAIT)
        self.assertFalse(self.queue.is_active("a"))
        self.assertEqual(self.store.failures["a"], "Processing stopped")
        self.assertEqual(self.store.statuses["a"][-1][0], JobStatus.FAILED)

    def test_restart_after_cancel_runs_new_work(self):
        self.add("a", gated=True)
        self.queue.enqueue("a")
        self.wait_started("a")
        self.queue.stop(wait=True, cancel_active=True, timeout=WAIT)

        self.add("b")
        self.queue.start()
        self.queue.enqueue("b")
        self.assertTrue(self.queue.wait_idle(WAIT))
        self.assertIn("b", self.store.saved)

    def test_invalid_limit(self):
        with self.assertRaises(ValueError):
            TranslationQueue(self.store, self.translator, self.reporter, max_concurrent=0)


if __name__ == "__main__":
    unittest.main()
