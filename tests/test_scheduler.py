# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Unit tests for the timer registry and step sequences."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "bridge"))

from src.scheduler import StepSequence, TimerRegistry


class TestTimerRegistry:
    def test_fires_after_delay(self, manual_loop):
        timers = TimerRegistry(manual_loop)
        fired = []
        timers.call_later(2.0, lambda: fired.append("a"), "a")
        manual_loop.advance(1.9)
        assert fired == []
        manual_loop.advance(0.1)
        assert fired == ["a"]
        assert timers.active_count == 0

    def test_cancel_prevents_fire(self, manual_loop):
        timers = TimerRegistry(manual_loop)
        fired = []
        t = timers.call_later(1.0, lambda: fired.append(1))
        t.cancel()
        manual_loop.advance(5)
        assert fired == []
        assert not t.active

    def test_cap_evicts_oldest(self, manual_loop):
        timers = TimerRegistry(manual_loop, max_timers=3)
        fired = []
        for name in "abcd":
            timers.call_later(1.0, lambda n=name: fired.append(n), name)
        assert timers.active_count == 3
        assert timers.evicted == 1
        assert timers.active_names() == ["b", "c", "d"]
        manual_loop.advance(1.0)
        assert fired == ["b", "c", "d"]

    def test_cancel_all(self, manual_loop):
        timers = TimerRegistry(manual_loop)
        fired = []
        for _ in range(5):
            timers.call_later(1.0, lambda: fired.append(1))
        timers.cancel_all()
        manual_loop.advance(2)
        assert fired == []
        assert timers.active_count == 0

    def test_callback_exception_is_contained(self, manual_loop, caplog):
        timers = TimerRegistry(manual_loop)
        fired = []

        def boom():
            raise RuntimeError("boom")

        timers.call_later(1.0, boom, "boom")
        timers.call_later(1.0, lambda: fired.append("after"))
        manual_loop.advance(1.0)
        assert fired == ["after"]
        assert "Timer boom callback failed" in caplog.text

    def test_now_follows_loop_clock(self, manual_loop):
        timers = TimerRegistry(manual_loop)
        manual_loop.advance(12.5)
        assert timers.now() == 12.5


class TestStepSequence:
    def test_runs_steps_in_order_with_relative_delays(self, manual_loop):
        timers = TimerRegistry(manual_loop)
        log = []
        seq = StepSequence(timers, [
            (1.0, lambda: log.append(("one", manual_loop.now))),
            (2.0, lambda: log.append(("two", manual_loop.now))),
            (3.0, lambda: log.append(("three", manual_loop.now))),
        ]).start()
        assert seq.active
        manual_loop.advance(10)
        assert log == [("one", 1.0), ("two", 3.0), ("three", 6.0)]
        assert not seq.active
        assert seq.position == 3

    def test_false_aborts_remaining_steps(self, manual_loop):
        timers = TimerRegistry(manual_loop)
        log = []
        seq = StepSequence(timers, [
            (1.0, lambda: log.append(1)),
            (1.0, lambda: False),
            (1.0, lambda: log.append(3)),
        ]).start()
        manual_loop.advance(10)
        assert log == [1]
        assert not seq.active

    def test_cancel_stops_sequence(self, manual_loop):
        timers = TimerRegistry(manual_loop)
        log = []
        seq = StepSequence(timers, [
            (1.0, lambda: log.append(1)),
            (1.0, lambda: log.append(2)),
        ]).start()
        manual_loop.advance(1.0)
        seq.cancel()
        manual_loop.advance(10)
        assert log == [1]
        assert timers.active_count == 0

    def test_exception_aborts_sequence(self, manual_loop):
        timers = TimerRegistry(manual_loop)
        log = []

        def boom():
            raise ValueError("bad step")

        seq = StepSequence(timers, [(1.0, boom), (1.0, lambda: log.append(2))]).start()
        manual_loop.advance(5)
        assert log == []
        assert not seq.active

    def test_restart_begins_from_first_step(self, manual_loop):
        timers = TimerRegistry(manual_loop)
        log = []
        seq = StepSequence(timers, [
            (1.0, lambda: log.append("a")),
            (1.0, lambda: log.append("b")),
        ]).start()
        manual_loop.advance(1.0)
        seq.start()
        manual_loop.advance(5)
        assert log == ["a", "a", "b"]
