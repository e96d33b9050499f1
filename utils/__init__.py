from .validators import validate_task_request
from .helpers import rich_to_plain, secure_randint, generate_request_id

__all__ = ["validate_task_request", "rich_to_plain", "secure_randint", "generate_request_id"]
