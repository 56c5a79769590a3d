class PgVaultError(Exception):
    pass


class ConfigurationError(PgVaultError, ValueError):
    pass


class TemplateError(ConfigurationError):
    pass


class StorageError(PgVaultError):
    pass


class ObjectNotFoundError(StorageError):
    def __init__(self, key: str) -> None:
        super().__init__(f"object not found: {key}")
        self.key = key


class PgToolError(PgVaultError):
    """A pg_dump / psql invocation exited non-zero."""

    def __init__(self, tool: str, returncode: int, output: str) -> None:
        super().__init__(f"{tool} exited with status {returncode}: {output.strip()}")
        self.tool = tool
        self.returncode = returncode
        self.output = output


class ConflictPolicyError(PgVaultError):
    pass


class OperationCancelled(PgVaultError):
    pass
