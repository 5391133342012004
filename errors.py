class VPNStoreError(Exception):
    """Base class for errors raised by the store core"""


class NotFoundError(VPNStoreError):
    pass


class InvalidInputError(VPNStoreError):
    pass


class BackendError(VPNStoreError):
    """Remote panel returned a non-success or unparseable response"""


class StoreError(VPNStoreError):
    """Local persistence read/write failed"""
