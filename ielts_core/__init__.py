"""Test session lifecycle and scoring engine for IELTS-style practice tests."""

__version__ = "0.1.0"
