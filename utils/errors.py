# utils/errors.py
# Exception type shared by the domain modules and rendered by app.py.


class ActionError(ValueError):
    """A business-rule failure that should reach the client as-is.

    ``status_code`` picks the HTTP status; ``payload`` carries extra keys
    (error lists, error codes) merged into the JSON body.
    """

    def __init__(self, message, status_code=400, **payload):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self):
        data = {"success": False, "error": self.message}
        data.update(self.payload)
        return data
