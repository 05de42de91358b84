"""Bluetooth + biometric multi-factor authentication controller."""

__version__ = "0.1.0"
