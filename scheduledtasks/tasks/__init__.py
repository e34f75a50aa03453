"""Built-in task classes. Importing this package registers them."""

from scheduledtasks.tasks import demo  # noqa: F401
