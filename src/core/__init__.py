"""Core domain package for otpwatch.

Core contains OTP extraction rules, message sources, and the monitoring
state machine without any Telegram, HTTP, or storage-specific code, keeping
the business logic portable.
"""
