"""
In-memory form state for the draft subsystem.

One FormStore holds the latest known data, dirty flags, validation errors
and auto-save status for every form of one owner. Reads never touch storage.
"""

import copy
import threading


def default_autosave_status(form_id):
    return {
        'form_id': form_id,
        'last_saved': None,
        'is_saving': False,
        'has_error': False,
        'error_message': None,
    }


class FormStore:
    """Thread-safe key -> value mirror of form data and save status."""

    def __init__(self):
        self._lock = threading.RLock()
        self._form_data = {}
        self._dirty = {}
        self._validation_errors = {}
        self._autosave_status = {}
        self._registered = set()

    # ---------- form data ----------

    def set_form_data(self, form_id, data):
        with self._lock:
            self._form_data[form_id] = copy.deepcopy(data)

    def get_form_data(self, form_id):
        """Return a copy of the mirrored data, or None."""
        with self._lock:
            data = self._form_data.get(form_id)
            return copy.deepcopy(data) if data is not None else None

    def has_form_data(self, form_id):
        with self._lock:
            return self._form_data.get(form_id) is not None

    def clear_form_data(self, form_id):
        with self._lock:
            self._form_data.pop(form_id, None)
            self._dirty.pop(form_id, None)
            self._validation_errors.pop(form_id, None)
            self._autosave_status.pop(form_id, None)

    def clear_all_forms(self):
        with self._lock:
            self._form_data.clear()
            self._dirty.clear()
            self._validation_errors.clear()
            self._autosave_status.clear()
            self._registered.clear()

    # ---------- dirty tracking ----------

    def set_dirty(self, form_id, dirty):
        with self._lock:
            self._dirty[form_id] = bool(dirty)

    def is_dirty(self, form_id):
        with self._lock:
            return self._dirty.get(form_id, False)

    def has_unsaved_forms(self):
        with self._lock:
            return any(self._dirty.values())

    def unsaved_form_ids(self):
        with self._lock:
            return sorted(fid for fid, dirty in self._dirty.items() if dirty)

    # ---------- validation errors ----------

    def set_validation_errors(self, form_id, errors):
        with self._lock:
            self._validation_errors[form_id] = dict(errors or {})

    def get_validation_errors(self, form_id):
        with self._lock:
            return dict(self._validation_errors.get(form_id) or {})

    def clear_validation_errors(self, form_id):
        with self._lock:
            self._validation_errors.pop(form_id, None)

    # ---------- auto-save status ----------

    def set_autosave_status(self, form_id, **changes):
        """Merge status changes onto the current (or default) status."""
        unknown = set(changes) - set(default_autosave_status(form_id))
        if unknown:
            raise KeyError(f"Unknown auto-save status field(s): {', '.join(sorted(unknown))}")
        with self._lock:
            status = self._autosave_status.get(form_id) or default_autosave_status(form_id)
            status = dict(status)
            status.update(changes)
            status['form_id'] = form_id
            self._autosave_status[form_id] = status
            return dict(status)

    def get_autosave_status(self, form_id):
        with self._lock:
            status = self._autosave_status.get(form_id)
            return dict(status) if status else None

    # ---------- registration ----------

    def register_form(self, form_id):
        with self._lock:
            self._registered.add(form_id)

    def unregister_form(self, form_id):
        """Mark a form inactive and reset its status."""
        with self._lock:
            self._registered.discard(form_id)
            self._autosave_status.pop(form_id, None)

    def is_registered(self, form_id):
        with self._lock:
            return form_id in self._registered

    def registered_form_ids(self):
        with self._lock:
            return sorted(self._registered)
