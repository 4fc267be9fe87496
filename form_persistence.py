"""
Tiered persistence for in-progress form data (drafts).

Drafts are written as JSON records ``{"data", "timestamp", "formId"}`` to a
storage tier and mirrored into a FormStore for zero-latency reads:

* session tier - keys ``session_form_data_<formId>``, lives as long as the
  login session, never expires by age;
* local tier - keys ``form_data_<formId>``, survives logout, records older
  than MAX_AGE_MS are purged on read.

Every failure is logged and degrades to "no persistence"; nothing here
raises to the caller.
"""

import json
import logging
import threading
import time

logger = logging.getLogger(__name__)

STORAGE_PREFIX = 'form_data_'
SESSION_STORAGE_PREFIX = 'session_form_data_'
MAX_STORAGE_SIZE = 5 * 1024 * 1024
MAX_AGE_MS = 24 * 60 * 60 * 1000
CLEANUP_THRESHOLD = 0.8
CLEANUP_FRACTION = 0.25
PROBE_KEY = '__storage_test__'


class StorageUnavailable(Exception):
    """Raised by a backend that cannot be used at all."""


class StorageQuotaExceeded(StorageUnavailable):
    """Raised when a write would push a backend past its quota."""


class StorageBackend:
    """Key/value string store used as one persistence tier."""

    name = 'storage'

    def get(self, key):
        raise NotImplementedError

    def set(self, key, value):
        raise NotImplementedError

    def remove(self, key):
        raise NotImplementedError

    def scan(self, prefix=''):
        """Return every key starting with prefix."""
        raise NotImplementedError

    def size(self):
        """Total characters held (keys plus values)."""
        raise NotImplementedError

    def is_available(self):
        try:
            self.set(PROBE_KEY, PROBE_KEY)
            self.remove(PROBE_KEY)
            return True
        except Exception:
            return False


class MemoryStorage(StorageBackend):
    """Process-local dict store with a size quota."""

    name = 'memory'

    def __init__(self, quota=MAX_STORAGE_SIZE, enabled=True):
        self.quota = quota
        self.enabled = enabled
        self._items = {}
        self._lock = threading.RLock()

    def _check_enabled(self):
        if not self.enabled:
            raise StorageUnavailable(f'{self.name} storage is disabled')

    def get(self, key):
        self._check_enabled()
        with self._lock:
            return self._items.get(key)

    def set(self, key, value):
        self._check_enabled()
        value = str(value)
        with self._lock:
            current = self._items.get(key)
            used = self.size() - (len(key) + len(current) if current is not None else 0)
            if self.quota is not None and used + len(key) + len(value) > self.quota:
                raise StorageQuotaExceeded(f'{self.name} storage quota of {self.quota} exceeded')
            self._items[key] = value

    def remove(self, key):
        self._check_enabled()
        with self._lock:
            self._items.pop(key, None)

    def scan(self, prefix=''):
        self._check_enabled()
        with self._lock:
            return [k for k in self._items if k.startswith(prefix)]

    def size(self):
        with self._lock:
            return sum(len(k) + len(v) for k, v in self._items.items())

    def __len__(self):
        return len(self._items)


class PostgresStorage(StorageBackend):
    """Owner-scoped rows in the ``form_drafts`` table."""

    name = 'database'

    def __init__(self, connect, owner, quota=MAX_STORAGE_SIZE):
        self.connect = connect
        self.owner = owner
        self.quota = quota

    def get(self, key):
        with self.connect() as conn:
            c = conn.cursor()
            c.execute(
                'SELECT value FROM form_drafts WHERE owner = %s AND storage_key = %s',
                (self.owner, key),
            )
            row = c.fetchone()
        return row[0] if row else None

    def set(self, key, value):
        value = str(value)
        with self.connect(commit=True) as conn:
            c = conn.cursor()
            if self.quota is not None:
                c.execute(
                    '''SELECT COALESCE(SUM(LENGTH(storage_key) + LENGTH(value)), 0)
                       FROM form_drafts WHERE owner = %s AND storage_key <> %s''',
                    (self.owner, key),
                )
                used = int((c.fetchone() or [0])[0] or 0)
                if used + len(key) + len(value) > self.quota:
                    raise StorageQuotaExceeded(f'{self.name} storage quota of {self.quota} exceeded')
            c.execute(
                '''INSERT INTO form_drafts (owner, storage_key, value, updated_at)
                   VALUES (%s, %s, %s, CURRENT_TIMESTAMP)
                   ON CONFLICT(owner, storage_key) DO UPDATE SET
                     value = excluded.value,
                     updated_at = CURRENT_TIMESTAMP''',
                (self.owner, key, value),
            )

    def remove(self, key):
        with self.connect(commit=True) as conn:
            c = conn.cursor()
            c.execute(
                'DELETE FROM form_drafts WHERE owner = %s AND storage_key = %s',
                (self.owner, key),
            )

    def scan(self, prefix=''):
        like = prefix.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_') + '%'
        with self.connect() as conn:
            c = conn.cursor()
            c.execute(
                "SELECT storage_key FROM form_drafts WHERE owner = %s AND storage_key LIKE %s ESCAPE '\\'",
                (self.owner, like),
            )
            return [row[0] for row in c.fetchall()]

    def size(self):
        with self.connect() as conn:
            c = conn.cursor()
            c.execute(
                'SELECT COALESCE(SUM(LENGTH(storage_key) + LENGTH(value)), 0) FROM form_drafts WHERE owner = %s',
                (self.owner,),
            )
            row = c.fetchone()
        return int(row[0] or 0) if row else 0


class StorageTier:
    """A backend plus the key prefix and age limit it is used with."""

    def __init__(self, name, backend, prefix, max_age_ms=None):
        self.name = name
        self.backend = backend
        self.prefix = prefix
        self.max_age_ms = max_age_ms

    def key(self, form_id):
        return f'{self.prefix}{form_id}'

    def is_available(self):
        return self.backend is not None and self.backend.is_available()


def _parse_record(raw):
    """Decode a stored record; None when it is not a valid FormRecord."""
    try:
        record = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(record, dict) or 'data' not in record:
        return None
    timestamp = record.get('timestamp')
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        return None
    return record


class FormPersistence:
    """Save/load/clear drafts across the mirror and the storage tiers."""

    def __init__(self, store, session_backend=None, local_backend=None,
                 max_storage_size=MAX_STORAGE_SIZE, max_age_ms=MAX_AGE_MS, clock=None):
        self.store = store
        self.session_tier = StorageTier('session', session_backend, SESSION_STORAGE_PREFIX)
        self.local_tier = StorageTier('local', local_backend, STORAGE_PREFIX, max_age_ms=max_age_ms)
        self.max_storage_size = max_storage_size
        self.clock = clock or time.time

    def now_ms(self):
        return int(self.clock() * 1000)

    def _tier(self, use_session):
        return self.session_tier if use_session else self.local_tier

    def _read_tiers(self, use_session):
        """Durable tiers in lookup order."""
        return [self.session_tier, self.local_tier] if use_session else [self.local_tier]

    # ---------- budget ----------

    def storage_size(self, use_session=False):
        tier = self._tier(use_session)
        if not tier.is_available():
            return 0
        return self._tier_size(tier)

    def _tier_size(self, tier):
        try:
            return tier.backend.size()
        except Exception as exc:
            logger.warning('Could not measure %s storage: %s', tier.name, exc)
            return 0

    def cleanup(self, use_session=False):
        """Evict the oldest quarter of this tier's drafts once usage nears the ceiling.

        Returns the number of records removed (corrupt entries included).
        """
        tier = self._tier(use_session)
        if not tier.is_available():
            return 0
        return self._cleanup_tier(tier)

    def _cleanup_tier(self, tier):
        # caller has already checked availability
        if self._tier_size(tier) < self.max_storage_size * CLEANUP_THRESHOLD:
            return 0

        removed = 0
        dated = []
        try:
            for key in tier.backend.scan(tier.prefix):
                record = _parse_record(tier.backend.get(key))
                if record is None:
                    tier.backend.remove(key)
                    removed += 1
                    continue
                dated.append((record['timestamp'], key))
            dated.sort()
            for _timestamp, key in dated[:int(len(dated) * CLEANUP_FRACTION)]:
                tier.backend.remove(key)
                removed += 1
        except Exception as exc:
            logger.warning('Draft cleanup on %s storage failed: %s', tier.name, exc)
        if removed:
            logger.info('Evicted %s draft(s) from %s storage', removed, tier.name)
        return removed

    # ---------- operations ----------

    def save(self, form_id, data, use_session=False):
        """Persist data under form_id. Returns True on success."""
        tier = self._tier(use_session)
        if not tier.is_available():
            message = f'{tier.name} storage not available for form persistence'
            logger.warning('%s (form %s)', message, form_id)
            self._mark_error(form_id, message)
            return False

        try:
            now = self.now_ms()
            payload = json.dumps({'data': data, 'timestamp': now, 'formId': form_id})
            self._cleanup_tier(tier)
            tier.backend.set(tier.key(form_id), payload)
        except Exception as exc:
            logger.error('Error saving form data for %s: %s', form_id, exc)
            self._mark_error(form_id, str(exc) or exc.__class__.__name__)
            return False

        try:
            self.store.set_form_data(form_id, json.loads(payload)['data'])
            self.store.set_autosave_status(
                form_id, last_saved=now, is_saving=False, has_error=False, error_message=None,
            )
        except Exception as exc:
            # Storage write already succeeded.
            logger.warning('Failed to update form store for %s: %s', form_id, exc)
        return True

    def _mark_error(self, form_id, message):
        try:
            self.store.set_autosave_status(form_id, is_saving=False, has_error=True, error_message=message)
        except Exception as exc:
            logger.warning('Failed to record save error for %s: %s', form_id, exc)

    def _read_tier(self, tier, form_id):
        """Return a live record from one tier, purging corrupt or stale entries."""
        if not tier.is_available():
            return None
        key = tier.key(form_id)
        try:
            raw = tier.backend.get(key)
            if raw is None:
                return None
            record = _parse_record(raw)
            if record is None:
                logger.warning('Discarding corrupt %s draft %s', tier.name, form_id)
                tier.backend.remove(key)
                return None
            if tier.max_age_ms is not None and self.now_ms() - record['timestamp'] > tier.max_age_ms:
                logger.info('Discarding expired %s draft %s', tier.name, form_id)
                tier.backend.remove(key)
                return None
            return record
        except Exception as exc:
            logger.warning('Error loading %s draft %s: %s', tier.name, form_id, exc)
            return None

    def load(self, form_id, use_session=False):
        """Return saved data for form_id, or None."""
        try:
            data = self.store.get_form_data(form_id)
            if data is not None:
                return data
        except Exception as exc:
            logger.warning('Form store lookup failed for %s: %s', form_id, exc)

        for tier in self._read_tiers(use_session):
            record = self._read_tier(tier, form_id)
            if record is None:
                continue
            try:
                self.store.set_form_data(form_id, record['data'])
            except Exception as exc:
                logger.warning('Failed to update form store for %s: %s', form_id, exc)
            return record['data']
        return None

    def clear(self, form_id, use_session=False):
        """Remove form_id from the mirror and the storage tiers."""
        try:
            self.store.clear_form_data(form_id)
        except Exception as exc:
            logger.warning('Form store clear failed for %s: %s', form_id, exc)
        tiers = [self.session_tier, self.local_tier] if use_session else [self.local_tier]
        for tier in tiers:
            if not tier.is_available():
                continue
            try:
                tier.backend.remove(tier.key(form_id))
            except Exception as exc:
                logger.error('Error clearing %s draft %s: %s', tier.name, form_id, exc)

    def clear_all(self):
        """Remove every draft from the mirror and both tiers."""
        try:
            self.store.clear_all_forms()
        except Exception as exc:
            logger.warning('Form store reset failed: %s', exc)
        for tier in (self.local_tier, self.session_tier):
            if not tier.is_available():
                continue
            try:
                for key in tier.backend.scan(tier.prefix):
                    tier.backend.remove(key)
            except Exception as exc:
                logger.error('Error clearing all %s drafts: %s', tier.name, exc)

    def has_data(self, form_id):
        try:
            if self.store.has_form_data(form_id):
                return True
        except Exception as exc:
            logger.warning('Form store lookup failed for %s: %s', form_id, exc)
        return any(
            self._read_tier(tier, form_id) is not None
            for tier in (self.session_tier, self.local_tier)
        )
