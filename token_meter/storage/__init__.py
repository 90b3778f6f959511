"""
Persistence for users, usage logs and subscriptions.
"""
