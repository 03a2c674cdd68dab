"""
Notifications module: in-app alerts for employees (new assignments).
"""
