# bulbul/errors.py


class BulbulError(Exception):
    """Base class for every error raised by the live posts core."""


class NotFound(BulbulError):
    def __init__(self, post_id: str):
        super().__init__(f"Post not found: {post_id}")
        self.post_id = post_id


class ValidationFailed(BulbulError):
    def __init__(self, message: str, errors=None):
        super().__init__(message)
        self.errors = errors or []


class StorageIO(BulbulError):
    """An asset could not be written."""


class ConnectionLost(BulbulError):
    """An observer connection can no longer accept messages."""


class DuplicateEngagement(BulbulError):
    def __init__(self, post_id: str, kind: str):
        super().__init__(f"Post {post_id} already has a {kind} from this session")
        self.post_id = post_id
        self.kind = kind
