"""
Per-login wiring of the draft subsystem for the web app.

Each login session of a portal user (owner) gets its own FormStore mirror,
session-tier MemoryStorage and live AutoSavers. All three are discarded at
logout or once the login has been idle for ``session_idle_ms``. The local
tier is the owner's rows in the ``form_drafts`` table and outlives logins.
"""

import logging
import threading
import time

from autosave import AutoSaver, DEFAULT_AUTOSAVE_INTERVAL, DEFAULT_DEBOUNCE_DELAY
from form_persistence import FormPersistence, MemoryStorage, PostgresStorage, MAX_AGE_MS, MAX_STORAGE_SIZE
from form_store import FormStore

logger = logging.getLogger(__name__)

DEFAULT_SESSION_IDLE_MS = 2 * 60 * 60 * 1000


class DraftSession:
    """Draft state owned by one login: mirror, session tier and live savers."""

    def __init__(self, owner, token, quota, now_ms):
        self.owner = owner
        self.token = token
        self.store = FormStore()
        self.session_backend = MemoryStorage(quota=quota) if token else None
        self.savers = {}
        self.last_active = now_ms

    def close_savers(self):
        savers = list(self.savers.values())
        self.savers.clear()
        for saver in savers:
            saver.unmount()
        return len(savers)


class DraftRegistry:

    def __init__(self, connect=None, max_storage_size=MAX_STORAGE_SIZE, max_age_ms=MAX_AGE_MS,
                 auto_save_interval=DEFAULT_AUTOSAVE_INTERVAL, debounce_delay=DEFAULT_DEBOUNCE_DELAY,
                 session_idle_ms=DEFAULT_SESSION_IDLE_MS, local_backend_factory=None, scheduler=None, clock=None):
        self.max_storage_size = max_storage_size
        self.max_age_ms = max_age_ms
        self.auto_save_interval = auto_save_interval
        self.debounce_delay = debounce_delay
        self.session_idle_ms = session_idle_ms
        self.scheduler = scheduler
        self.clock = clock
        if local_backend_factory is None and connect is not None:
            def local_backend_factory(owner):
                return PostgresStorage(connect, owner, quota=max_storage_size)
        self.local_backend_factory = local_backend_factory
        self._lock = threading.RLock()
        self._sessions = {}

    def now_ms(self):
        return int((self.clock or time.time)() * 1000)

    # ---------- login sessions ----------

    def _session(self, owner, session_token):
        """Return the DraftSession for this login, creating it on first use."""
        self.evict_idle()
        key = (owner, session_token or None)
        with self._lock:
            draft_session = self._sessions.get(key)
            if draft_session is None:
                draft_session = self._sessions[key] = DraftSession(
                    owner, session_token or None, self.max_storage_size, self.now_ms(),
                )
            draft_session.last_active = self.now_ms()
            return draft_session

    def has_session(self, owner, session_token):
        with self._lock:
            return (owner, session_token or None) in self._sessions

    def evict_idle(self):
        """Forget logins with no activity for session_idle_ms. Returns how many were dropped."""
        if not self.session_idle_ms:
            return 0
        cutoff = self.now_ms() - self.session_idle_ms
        with self._lock:
            stale = [key for key, s in self._sessions.items() if s.last_active < cutoff]
            dropped = [self._sessions.pop(key) for key in stale]
        for draft_session in dropped:
            draft_session.close_savers()
        if dropped:
            logger.info('Evicted %s idle draft session(s)', len(dropped))
        return len(dropped)

    def forget_session(self, owner, session_token):
        """Drop a login's mirror and session tier and close its savers."""
        with self._lock:
            draft_session = self._sessions.pop((owner, session_token or None), None)
        if draft_session is None:
            return False
        closed = draft_session.close_savers()
        if closed:
            logger.info('Closed %s auto-saver(s) for %s at logout', closed, owner)
        return True

    # ---------- per-login access ----------

    def store_for(self, owner, session_token=None):
        return self._session(owner, session_token).store

    def session_backend(self, owner, session_token):
        if not session_token:
            return None
        return self._session(owner, session_token).session_backend

    def persistence(self, owner, session_token=None):
        """Build the FormPersistence for one owner and login session."""
        draft_session = self._session(owner, session_token)
        return self._persistence_for(draft_session)

    def _persistence_for(self, draft_session):
        local_backend = self.local_backend_factory(draft_session.owner) if self.local_backend_factory else None
        return FormPersistence(
            draft_session.store,
            session_backend=draft_session.session_backend,
            local_backend=local_backend,
            max_storage_size=self.max_storage_size,
            max_age_ms=self.max_age_ms,
            clock=self.clock,
        )

    def autosaver(self, owner, session_token, form_id, use_session=False, **options):
        """Return the mounted AutoSaver for this login's form, creating it on first use."""
        draft_session = self._session(owner, session_token)
        with self._lock:
            saver = draft_session.savers.get(form_id)
            if saver is not None and saver.use_session == bool(use_session):
                return saver
            if saver is not None:
                saver.unmount()
            options.setdefault('auto_save_interval', self.auto_save_interval)
            options.setdefault('debounce_delay', self.debounce_delay)
            saver = AutoSaver(
                self._persistence_for(draft_session),
                form_id,
                use_session=bool(use_session),
                scheduler=self.scheduler,
                **options,
            )
            draft_session.savers[form_id] = saver
        saver.mount()
        return saver

    def get_autosaver(self, owner, session_token, form_id):
        with self._lock:
            draft_session = self._sessions.get((owner, session_token or None))
            if draft_session is None:
                return None
            draft_session.last_active = self.now_ms()
            return draft_session.savers.get(form_id)

    def close(self, owner, session_token, form_id):
        """Unmount a form's AutoSaver. Returns False when none was open."""
        with self._lock:
            draft_session = self._sessions.get((owner, session_token or None))
            saver = draft_session.savers.pop(form_id, None) if draft_session else None
        if saver is None:
            return False
        saver.unmount()
        return True
