"""
Background workers for notification delivery and payouts.
"""
