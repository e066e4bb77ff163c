"""
DVFlash Error Hierarchy
=======================

This module defines the exception hierarchy for the whole package.
All exceptions inherit from DVFlashError, allowing callers to catch every
flasher-related error with a single except clause if desired.

Exception Hierarchy
-------------------
DVFlashError (base)
├── PlanError - the requested operation cannot be turned into a command plan
├── ImageError (image handling)
│   ├── MissingInputError - image file or embedded loader not found
│   └── RecordFormatError - malformed S-record line
└── CommsError (serial communication)
    ├── ConnectionError - serial channel unavailable or failed
    ├── ProtocolError - device protocol in an unusable state
    ├── TimeoutError - no response within the allowed time
    ├── CancelledError - operator cancelled the run
    └── TransferError - transfer failed on the device side
        └── FinalConfirmationError - the device never confirmed execution

Classification
--------------
Only transport faults, missing input and a missing final confirmation are
fatal. A wrong or missing handshake token is NOT an exception: the handshake
sequencer restarts the affected phase instead (see dvflash.comms.boot).
"""


class DVFlashError(Exception):
    """
    Base exception for all DVFlash errors.

    All exceptions in the package inherit from this class, allowing callers
    to catch every flasher error with a single except clause:

        try:
            outcome = run_flash(transport, plan)
        except DVFlashError as e:
            print(f"Error: {e}")
    """
    pass


class PlanError(DVFlashError):
    """
    Invalid command plan.

    Raised when the requested combination of command, flash family,
    addresses and images cannot be transmitted, for example:
    - An application command without an application image
    - An address that does not fit its protocol field
    """
    pass


# =============================================================================
# Image Exceptions
# =============================================================================

class ImageError(DVFlashError):
    """Base exception for image loading and encoding errors."""
    pass


class MissingInputError(ImageError):
    """
    Required input image is not available.

    Raised before anything is written to the serial channel when:
    - The application or loader file does not exist
    - The embedded loader image for the flash family cannot be found
    """

    def __init__(self, message: str, path: str = ""):
        self.path = path
        super().__init__(message)


class RecordFormatError(ImageError):
    """
    Malformed S-record line.

    Raised when a line does not start with a supported record type,
    its byte count disagrees with its length, or its checksum is wrong.
    """
    pass


# =============================================================================
# Communication Exceptions
# =============================================================================

class CommsError(DVFlashError):
    """Base exception for serial communication errors."""
    pass


class ConnectionError(CommsError):
    """
    Serial channel fault.

    Raised when:
    - Serial port not found
    - Permission denied
    - A read or write on the open port fails
    """
    pass


class ProtocolError(CommsError):
    """
    Device protocol error.

    Raised when the handshake cannot proceed at all, such as a command
    code the sequencer has no phase sequence for.
    """
    pass


class TimeoutError(CommsError):
    """
    Communication timeout error.

    Note:
        This is a DVFlash-specific TimeoutError, distinct from the
        Python builtin TimeoutError. It inherits from CommsError
        for consistent error handling in the comms module.
    """
    pass


class CancelledError(CommsError):
    """
    The operator cancelled the run.

    Data already written to the channel is not rolled back; the device
    detects the incomplete transfer itself.
    """
    pass


class TransferError(CommsError):
    """
    Error during a transfer.

    Raised when the device rejects or fails to act on transmitted data.
    """
    pass


class FinalConfirmationError(TransferError):
    """
    The device never sent its final completion token.

    Once the application has been received and validated the device starts
    executing it, so restarting the phase at this point is unsafe. This is
    reported as a failure of the whole run.
    """

    def __init__(self, token: str, message: str = ""):
        self.token = token
        if not message:
            message = (
                f"Final {token.strip(chr(0)).strip()} not returned. "
                "Command failed on the device."
            )
        super().__init__(message)
