"""Project version constants.

These constants are logged by the worker at startup so that catalog contents
can be traced back to a specific engine and schema version.
"""

ENGINE_NAME: str = "libwatch"
ENGINE_VERSION: str = "0.1.0"

SCHEMA_VERSION: int = 2
