# backend/converter/errors.py
"""Exceptions raised by the converter.

Each error carries the HTTP status it is rendered with; the FastAPI
exception handler in ``main`` turns them into ``{"error": message}``.
Engine failures are not exceptions here: they are recorded on the job.
"""


class ConverterError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class MissingFile(ConverterError):
    status_code = 400


class UnsupportedMediaType(ConverterError):
    status_code = 415


class PayloadTooLarge(ConverterError):
    status_code = 413


class InvalidConversionRequest(ConverterError):
    status_code = 400


class JobNotFound(ConverterError):
    status_code = 404


class OutputMissing(ConverterError):
    status_code = 404


class NotReady(ConverterError):
    status_code = 400


class ConversionConflict(ConverterError):
    status_code = 409


class DuplicateJobError(ConverterError):
    status_code = 500


class StorageError(ConverterError):
    status_code = 500
