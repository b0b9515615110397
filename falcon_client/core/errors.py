class FalconError(Exception):
    """Base class for every error raised by the Falcon client."""


class UploadError(FalconError):
    """The capture could not be validated or uploaded; no job was created."""


class TransientNotFound(FalconError):
    """The backend does not (yet) know the requested analysis job."""

    def __init__(self, job_id: str):
        super().__init__(f"Analysis {job_id} not found")
        self.job_id = job_id


class TransportFailure(FalconError):
    """Network or protocol failure while talking to the backend."""


class JobFailed(FalconError):
    """The backend reported the analysis job as failed."""


class DecodeError(FalconError, ValueError):
    """A packet payload is not valid base64."""


class DataIntegrityError(FalconError, ValueError):
    """The backend returned data that breaks the packet/stream contract."""
