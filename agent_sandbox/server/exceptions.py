"""Custom exception classes for server API error handling."""


class TaskNotFoundError(Exception):
    """Raised when a task ID doesn't exist or belongs to another user.

    HTTP Status: 404 Not Found
    """

    def __init__(self, task_id: str):
        """Initialize TaskNotFoundError.

        Args:
            task_id: ID of the missing task.
        """
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class ServerNotFoundError(Exception):
    """Raised when a compute target ID doesn't exist.

    HTTP Status: 404 Not Found
    """

    def __init__(self, server_id: str):
        """Initialize ServerNotFoundError.

        Args:
            server_id: ID of the missing compute target.
        """
        self.server_id = server_id
        super().__init__(f"Server not found: {server_id}")


class UnauthorizedError(Exception):
    """Raised when a bearer token is missing or invalid.

    HTTP Status: 401 Unauthorized
    """

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class ForbiddenError(Exception):
    """Raised when an authenticated caller acts on a resource it does not own.

    HTTP Status: 403 Forbidden
    """

    def __init__(self, message: str):
        super().__init__(message)


class TaskVersionConflictError(Exception):
    """Raised when a task update carries a stale expected version.

    HTTP Status: 409 Conflict
    """

    def __init__(self, task_id: str, expected_version: int, current_version: int):
        """Initialize TaskVersionConflictError.

        Args:
            task_id: ID of the task.
            expected_version: Version the caller based its update on.
            current_version: Version currently persisted.
        """
        self.task_id = task_id
        self.expected_version = expected_version
        self.current_version = current_version
        super().__init__(
            f"Task {task_id} is at version {current_version}, expected {expected_version}"
        )


class DuplicateServerError(Exception):
    """Raised when registering a compute target name the user already has.

    HTTP Status: 409 Conflict
    """

    def __init__(self, name: str, server_id: str):
        """Initialize DuplicateServerError.

        Args:
            name: Conflicting name.
            server_id: ID of the existing compute target.
        """
        self.name = name
        self.server_id = server_id
        super().__init__(f"Server '{name}' is already registered as {server_id}")


class PromptNotFoundError(Exception):
    """Raised when a task has no prompt with the given id and tool call.

    HTTP Status: 404 Not Found
    """

    def __init__(self, task_id: str, prompt_id: str):
        self.task_id = task_id
        self.prompt_id = prompt_id
        super().__init__(f"Prompt not found: {prompt_id}")


class PromptExpiredError(Exception):
    """Raised when answering a prompt after its expiry.

    HTTP Status: 409 Conflict
    """

    def __init__(self, prompt_id: str):
        self.prompt_id = prompt_id
        super().__init__(f"Prompt has expired: {prompt_id}")


class PromptAlreadyAnsweredError(Exception):
    """Raised when a prompt has already been answered.

    HTTP Status: 409 Conflict
    """

    def __init__(self, prompt_id: str):
        self.prompt_id = prompt_id
        super().__init__(f"Prompt already answered: {prompt_id}")


class InspectFailedError(Exception):
    """Raised when inspecting a sandbox failed.

    HTTP Status: 502 Bad Gateway
    """

    def __init__(self, task_id: str, reason: str, request_id: str | None = None):
        """Initialize InspectFailedError.

        Args:
            task_id: ID of the inspected task.
            reason: Failure message recorded on the inspect request.
            request_id: Inspect request id, for registered targets.
        """
        self.task_id = task_id
        self.reason = reason
        self.request_id = request_id
        super().__init__(f"Inspect failed for task {task_id}: {reason}")


class InvalidStateError(Exception):
    """Raised when a task operation is invalid for its current state.

    HTTP Status: 422 Unprocessable Entity
    """

    def __init__(
        self,
        message: str,
        task_id: str,
        current_status: str | None = None,
    ):
        """Initialize InvalidStateError.

        Args:
            message: Error message describing the invalid operation.
            task_id: ID of the task.
            current_status: Current task status (optional).
        """
        self.task_id = task_id
        self.current_status = current_status
        super().__init__(message)
