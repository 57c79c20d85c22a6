from __future__ import annotations


class PersistenceError(Exception):
    pass


class PersistenceConflict(PersistenceError):
    """The (user_id, fingerprint) key was taken by a concurrent writer."""


class PersistenceUnavailable(PersistenceError):
    """The database could not be reached or was locked; the write may be retried."""


class PersistenceRejected(PersistenceError):
    """The database refused the row itself (bad value, bad statement); retrying cannot help."""
