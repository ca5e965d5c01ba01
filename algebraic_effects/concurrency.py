import heapq
import logging

from algebraic_effects.main import EffectsError, create_effect, func


logger = logging.getLogger(__name__)


Timer = create_effect("Timer", dict(
    sleep=func(["number"], "number"),
    now=func([], "number"),
))


def Sleep(t):
    return Timer.sleep(t)


class Timeline():
    """
    Cooperative scheduler on a virtual clock, for resuming continuations later without threads.

    Usage:
        timeline = Timeline()

        def take(ctx):
            def impl(items):
                for i, item in enumerate(items):
                    timeline.call_later(10 * i, ctx.defer(), item)
            return impl

        runner.run_multi(program).fork(on_failure, on_success)
        timeline.run()

    Entries due at the same time run in the order they were scheduled.
    """
    def __init__(self, start=0.0):
        self._now = start
        self._sequence = 0
        self._items = []

    @property
    def now(self):
        return self._now

    def call_later(self, delay, fn, *args):
        if delay < 0:
            raise EffectsError(f"Cannot schedule {getattr(fn, '__name__', fn)} in the past (delay {delay})")
        self._sequence += 1
        heapq.heappush(self._items, (self._now + delay, self._sequence, fn, args))

    def step(self):
        if not self._items:
            raise EffectsError("Nothing scheduled on the timeline")
        time, sequence, fn, args = heapq.heappop(self._items)
        self._now = max(self._now, time)
        logger.debug(f"timeline: running entry {sequence} at {self._now}")
        fn(*args)

    def run(self, until=None):
        """
        Runs scheduled entries, including ones scheduled while running, until none are left
        (or none are due by until).  Returns how many ran.
        """
        count = 0
        while self._items and (until is None or self._items[0][0] <= until):
            self.step()
            count += 1
        if until is not None:
            self._now = max(self._now, until)
        return count

    def empty(self):
        return not self._items

    def __len__(self):
        return len(self._items)

    def handler(self):
        """
        Runner for the Timer effect on this timeline: sleep resumes with the time it woke up at
        """
        def sleep(ctx):
            return lambda delay: self.call_later(delay, ctx.defer(), self._now + delay)

        def now(ctx):
            return lambda: ctx.resume(self._now)

        return Timer.handler(dict(sleep=sleep, now=now))
