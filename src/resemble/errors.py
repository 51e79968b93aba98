"""Error types raised at the I/O boundaries of a search run."""


class ResembleError(Exception):
    """Base error for resemble failures."""

    pass


class BootstrapFailure(ResembleError):
    """The model daemon never became ready.

    Attributes:
        output: Combined stdout/stderr captured from the daemon process
    """

    def __init__(self, message: str, output: str = "") -> None:
        if output:
            message = f"{message}. Output of process is:\n{output}"
        super().__init__(message)
        self.output = output


class TransportFailure(ResembleError):
    """A scoring, distance, or generative call failed or timed out."""

    pass


class ResourceStagingFailure(ResembleError):
    """The models directory or launcher script could not be written."""

    pass


class ConfigurationFailure(ResembleError):
    """Search parameters were rejected before any scan work began."""

    pass
