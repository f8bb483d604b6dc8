"""
Proctoring errors.

Camera and model failures degrade a monitor session instead of ending it;
these types let the session tell the failure modes apart.
"""


class ProctoringError(Exception):
    """Base class for monitor errors"""


class CameraError(ProctoringError):
    """The webcam could not be acquired"""


class CameraAccessDeniedError(CameraError):
    """The device exists but refuses to deliver frames"""


class CameraUnavailableError(CameraError):
    """No capture device at the requested index"""


class ModelLoadError(ProctoringError):
    """Detection model assets could not be fetched or initialized"""
