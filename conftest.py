import pytest


class FakeTimer:
    def __init__(self, due, callback):
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Manual clock; timers only fire inside advance()."""

    def __init__(self):
        self.now = 0.0
        self.timers = []

    def now_ms(self):
        return self.now

    def call_later(self, delay_ms, callback):
        timer = FakeTimer(self.now + max(0.0, delay_ms), callback)
        self.timers.append(timer)
        return timer

    def advance(self, ms):
        target = self.now + ms
        while True:
            due = [t for t in self.timers if not t.cancelled and t.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.timers.remove(timer)
            self.now = max(self.now, timer.due)
            timer.callback()
        self.now = target


@pytest.fixture
def scheduler():
    return FakeScheduler()
