"""Operator CLI for validate-strategy.

All commands print a JSON response envelope on stdout; logs go to stderr.
"""
