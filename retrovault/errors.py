"""Exceptions shared across the ingestion pipeline."""


class FatalPipelineError(Exception):
    """
    Error that invalidates a whole batch rather than a single ROM.

    Raised (never returned inside a PhaseResult) for problems such as a
    malformed platform table or a plugin whose entry point disappeared.
    The batch manager fails the job instead of moving on to the next file.
    """
    pass


class StorageError(Exception):
    """I/O failure while writing archive, manifest, metadata or playlist files."""
    pass
