"""
Debounced auto-save of live form data.

An AutoSaver binds one form's live state to a FormPersistence. Changes are
written after a quiet period (debounce) and, as a safety net, on a fixed
interval while unsaved changes remain. Both deadlines share one timer:

    idle -> pending -> saving -> idle | error

Whichever deadline fires first saves the latest state and cancels the other
pending save; both are re-armed from that instant. Save failures are
reported through the form's status and ``on_error``; they never raise.
"""

import json
import logging
import threading
import time

from form_store import default_autosave_status

logger = logging.getLogger(__name__)

IDLE = 'idle'
PENDING = 'pending'
SAVING = 'saving'
ERROR = 'error'

DEFAULT_AUTOSAVE_INTERVAL = 2000
DEFAULT_DEBOUNCE_DELAY = 500


class FormSaveError(Exception):
    """A draft could not be saved."""


class TimerScheduler:
    """Runs callbacks on daemon threading.Timer threads. Times are in ms."""

    def __init__(self, clock=None):
        self.clock = clock or time.monotonic

    def now_ms(self):
        return self.clock() * 1000.0

    def call_later(self, delay_ms, callback):
        timer = threading.Timer(max(0.0, delay_ms) / 1000.0, callback)
        timer.daemon = True
        timer.start()
        return timer


def _fingerprint(data):
    try:
        return json.dumps(data, sort_keys=True)
    except (TypeError, ValueError):
        return None


class AutoSaver:

    def __init__(self, persistence, form_id, form_data=None, auto_save=True,
                 auto_save_interval=DEFAULT_AUTOSAVE_INTERVAL, debounce_delay=DEFAULT_DEBOUNCE_DELAY,
                 use_session=False, on_load=None, on_save=None, on_error=None,
                 mark_dirty=True, has_changes=None, scheduler=None):
        if not form_id:
            raise ValueError('form_id is required')
        self.persistence = persistence
        self.store = persistence.store
        self.form_id = form_id
        self.auto_save = auto_save
        self.auto_save_interval = auto_save_interval
        self.debounce_delay = debounce_delay
        self.use_session = use_session
        self.on_load = on_load
        self.on_save = on_save
        self.on_error = on_error
        self.mark_dirty = mark_dirty
        self.has_changes = has_changes
        self.scheduler = scheduler or TimerScheduler()

        self._lock = threading.RLock()
        self._data = form_data if form_data is not None else {}
        self._snapshot = None
        self._dirty = False
        self._state = IDLE
        self._mounted = False
        self._debounce_at = None
        self._interval_at = None
        self._timer = None
        self._generation = 0

    def __enter__(self):
        return self.mount()

    def __exit__(self, exc_type, exc, tb):
        self.unmount()
        return False

    # ---------- lifecycle ----------

    def mount(self):
        """Register the form, restore any saved draft and start the timer."""
        with self._lock:
            if self._mounted:
                return self
            self._mounted = True
            self.store.register_form(self.form_id)
            saved = self.persistence.load(self.form_id, self.use_session)
            if saved is not None and self.on_load:
                self.scheduler.call_later(0, lambda: self._deliver_load(saved))
            self._snapshot = _fingerprint(saved if saved is not None else self._data)
            if self.auto_save:
                self._interval_at = self.scheduler.now_ms() + self.auto_save_interval
            self._reschedule()
        return self

    def unmount(self):
        with self._lock:
            self._mounted = False
            self._debounce_at = None
            self._interval_at = None
            self._cancel_timer()
            self._state = IDLE
            self.store.unregister_form(self.form_id)

    def _deliver_load(self, data):
        try:
            self.on_load(data)
        except Exception as exc:
            logger.error('on_load failed for form %s: %s', self.form_id, exc)
            self._notify_error(FormSaveError(f'Error loading form data: {exc}'))

    # ---------- live data ----------

    def update(self, form_data):
        """Record the latest form state and schedule a debounced save if it changed."""
        with self._lock:
            self._data = form_data
            if not self._mounted:
                return
            fingerprint = _fingerprint(form_data)
            if fingerprint is not None and fingerprint == self._snapshot:
                if self._state == PENDING:
                    self._debounce_at = None
                    self._state = IDLE
                    self._set_dirty(False)
                    self._reschedule()
                return
            self._set_dirty(True)
            if not self.auto_save:
                return
            self._state = PENDING
            now = self.scheduler.now_ms()
            self._debounce_at = now + self.debounce_delay
            if self._interval_at is None:
                self._interval_at = now + self.auto_save_interval
            self._reschedule()

    def save_now(self):
        """Save the current state immediately. Returns True on success."""
        with self._lock:
            saved = self._perform_save(self._data)
            self._reschedule()
            return saved

    def clear_saved_data(self):
        with self._lock:
            self.persistence.clear(self.form_id, self.use_session)
            self._set_dirty(False)
            self._snapshot = None
            self._debounce_at = None
            self._state = IDLE
            self._reschedule()

    # ---------- timer ----------

    def _cancel_timer(self):
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _reschedule(self):
        self._cancel_timer()
        if not self._mounted:
            return
        deadlines = [d for d in (self._debounce_at, self._interval_at) if d is not None]
        if not deadlines:
            return
        generation = self._generation
        delay = max(0.0, min(deadlines) - self.scheduler.now_ms())
        self._timer = self.scheduler.call_later(delay, lambda: self._on_timer(generation))

    def _on_timer(self, generation):
        with self._lock:
            if generation != self._generation or not self._mounted:
                return
            self._timer = None
            now = self.scheduler.now_ms()
            if self._debounce_at is not None and now >= self._debounce_at:
                self._perform_save(self._data)
                if self._interval_at is not None:
                    self._interval_at = now + self.auto_save_interval if self._dirty else None
            elif self._interval_at is not None and now >= self._interval_at:
                if self._dirty and _fingerprint(self._data) != self._snapshot:
                    self._interval_at = now + self.auto_save_interval
                    self._perform_save(self._data)
                else:
                    # clean: stays parked until the next change
                    self._interval_at = None
            self._reschedule()

    # ---------- saving ----------

    def _set_dirty(self, dirty):
        self._dirty = dirty
        if self.mark_dirty:
            self.store.set_dirty(self.form_id, dirty)

    def _perform_save(self, data):
        self._debounce_at = None
        try:
            if self.has_changes is not None and not self.has_changes(data):
                self._state = IDLE
                return False
            self._state = SAVING
            self.store.set_autosave_status(self.form_id, is_saving=True)
            if not self.persistence.save(self.form_id, data, self.use_session):
                status = self.store.get_autosave_status(self.form_id) or {}
                raise FormSaveError(status.get('error_message') or 'Failed to save form data')
            self._snapshot = _fingerprint(data)
            self._set_dirty(False)
            self._state = IDLE
            if self.on_save:
                self.on_save(data)
            return True
        except Exception as exc:
            error = exc if isinstance(exc, FormSaveError) else FormSaveError(str(exc))
            self._state = ERROR
            self.store.set_autosave_status(
                self.form_id, is_saving=False, has_error=True, error_message=str(error),
            )
            self._notify_error(error)
            return False

    def _notify_error(self, error):
        if not self.on_error:
            logger.error('Error saving form data for %s: %s', self.form_id, error)
            return
        try:
            self.on_error(error)
        except Exception as exc:
            logger.error('on_error callback failed for form %s: %s', self.form_id, exc)

    # ---------- status ----------

    @property
    def state(self):
        return self._state

    @property
    def is_mounted(self):
        return self._mounted

    @property
    def is_dirty(self):
        return self.mark_dirty and self._dirty

    @property
    def status(self):
        return self.store.get_autosave_status(self.form_id) or default_autosave_status(self.form_id)

    @property
    def last_saved(self):
        return self.status['last_saved']

    @property
    def is_saving(self):
        return self.status['is_saving']

    @property
    def has_error(self):
        return self.status['has_error']

    @property
    def error_message(self):
        return self.status['error_message']
