"""
Exceptions for VaultZip
Every error raised by the package derives from VaultZipError so callers
(the CLI in particular) have a single catch point.
"""


class VaultZipError(Exception):
    # general container for errors
    pass


class ConfigError(VaultZipError):
    # raised when the process configuration is missing or invalid
    pass


class ValidationError(VaultZipError):
    # raised when input is rejected before any cryptographic work

    def __init__(self, messages):
        if isinstance(messages, str):
            messages = [messages]
        self.messages = list(messages)
        super().__init__(", ".join(self.messages))


class FormatError(VaultZipError):
    # raised on malformed bundle framing (length, braces, json, fields)
    pass


class AuthenticationError(VaultZipError):
    # raised when an AEAD tag does not verify; wrong credential or tampering
    pass


class KeyUnwrapError(VaultZipError):
    # raised when a value encrypted at rest cannot be decrypted (corrupt or wrong purpose)
    pass


class StorageError(VaultZipError):
    # raised when the object store rejects a read or write
    pass


class BundleReadError(StorageError):
    # raised when a bundle cannot be read from disk
    pass


class BundleWriteError(StorageError):
    # raised when decrypted output cannot be written
    pass


class UserExistsError(VaultZipError):
    # raised when registering an email that already exists
    pass


class UserNotFoundError(VaultZipError):
    # raised when the user DNE in the DB
    pass


class UploadNotFoundError(VaultZipError):
    # raised when an upload record DNE or does not belong to the user
    pass


class UploadAlreadyCompletedError(VaultZipError):
    # raised when uploading against a record that is already Completed
    pass


class UploadConflictError(VaultZipError):
    # raised when another upload attempt took over the record mid-stream
    pass
