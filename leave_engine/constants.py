"""
Constants for leave types and role labels
"""

# Aggregate pseudo leave type debited by every non-exempt request
ANNUAL_QUOTA_LEAVE_TYPE = "Annual Leave Quota"

# Role labels as issued by the identity provider
ROLE_STAFF = "staff"
ROLE_MANAGER = "manager"
ROLE_DEPARTMENT_HEAD = "department_head"
ROLE_ADMIN = "admin"
