"""Tests for domain exception hierarchy."""

from __future__ import annotations

import unittest

from threadsync.exceptions import (
    ConfigValidationError,
    DeviceError,
    MessageValidationError,
    ThreadSyncError,
    TransportError,
    UploadError,
)


class ExceptionHierarchyTests(unittest.TestCase):
    """Validate exception inheritance contract."""

    def test_exception_hierarchy(self) -> None:
        self.assertTrue(issubclass(TransportError, ThreadSyncError))
        self.assertTrue(issubclass(UploadError, ThreadSyncError))
        self.assertTrue(issubclass(DeviceError, ThreadSyncError))
        self.assertTrue(issubclass(MessageValidationError, ThreadSyncError))
        self.assertTrue(issubclass(ConfigValidationError, ThreadSyncError))

    def test_base_error_is_runtime_error(self) -> None:
        self.assertTrue(issubclass(ThreadSyncError, RuntimeError))


if __name__ == "__main__":
    unittest.main()
