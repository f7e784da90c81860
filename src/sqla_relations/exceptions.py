from __future__ import annotations

from sqlalchemy import exc


StoreError = exc.SQLAlchemyError
"""Failures raised by statement execution. Re-exported, never wrapped."""


class ConfigurationError(ValueError):
    """A relation was configured or called with values it cannot work with.

    Raised synchronously, before any statement is sent to the store: an
    unsupported aggregate passed to ``of_many``, a key value that cannot be
    used for dictionary matching, an ambiguous composite pivot identity,
    an unknown morph discriminator and similar mistakes.
    """
