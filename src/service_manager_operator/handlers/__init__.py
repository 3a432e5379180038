"""Handler modules for CRD resources."""

# Import handlers to register them - all handlers register themselves via @kopf decorators
from . import service_binding  # noqa: F401
from . import service_instance  # noqa: F401
