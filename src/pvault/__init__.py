"""Personal vault — scope-controlled, OTP-gated, encrypted personal records."""

__version__ = "0.1.0"
