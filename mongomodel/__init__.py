# mongomodel/__init__.py

from .core.bson_utils import MongoBaseModel, PyObjectId
from .core.exceptions import (
    ConfigurationError,
    CrossConnectionError,
    DeleteFailedError,
    DocumentValidationError,
    MongoModelError,
    RecordNotFoundError,
    UpdateFailedError,
)
from .db.mongodb import Mongo, MongoContext
from .db.transaction import MongoTransaction
from .models.hooks import HookEvent, HookPhase
from .models.model import MongoModel
from .models.schema import deep_partial, extend, omit, partial, pick
from .query.update import UpdateResult

__all__ = [
    "Mongo",
    "MongoContext",
    "MongoModel",
    "MongoTransaction",
    "MongoBaseModel",
    "PyObjectId",
    "HookEvent",
    "HookPhase",
    "UpdateResult",
    "partial",
    "deep_partial",
    "pick",
    "omit",
    "extend",
    "MongoModelError",
    "ConfigurationError",
    "CrossConnectionError",
    "DocumentValidationError",
    "RecordNotFoundError",
    "UpdateFailedError",
    "DeleteFailedError",
]
