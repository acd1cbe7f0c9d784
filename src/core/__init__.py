"""Core domain package for switchboard.

Core contains account session state, rule evaluation, reply composition and
dispatch logic without any Telegram or storage-specific code, keeping the
business logic portable.
"""
