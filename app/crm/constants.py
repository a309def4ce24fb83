"""
Central constants for the CRM application.
"""
from __future__ import annotations

# Staff roles
ROLE_ADMIN = "admin"
ROLE_EMPLOYEE = "employee"
ROLES = (ROLE_ADMIN, ROLE_EMPLOYEE)
ROLE_LABELS = {ROLE_ADMIN: "Administrator", ROLE_EMPLOYEE: "Employee"}

# Customer pipeline (stage 1)
STATUS_COMMUNICATING = "communicating"
STATUS_CLOSED = "closed"
STATUS_REJECTED = "rejected"
CUSTOMER_STATUSES = (STATUS_COMMUNICATING, STATUS_CLOSED, STATUS_REJECTED)
# Statuses a lead can be created/edited into; "closed" is reached only by completing the lead.
LEAD_STATUSES = (STATUS_COMMUNICATING, STATUS_REJECTED)
STATUS_LABELS = {
    STATUS_COMMUNICATING: "Communicating",
    STATUS_CLOSED: "Closed",
    STATUS_REJECTED: "Rejected",
}

# Contracted customers (stage 2)
STAGE2_AWAITING_INTERVIEW = "awaiting_interview"
STAGE2_INTERVIEW_NOTIFIED = "interview_notified"
STAGE2_INTERVIEW_PASSED = "interview_passed"
STAGE2_INTERVIEW_FAILED = "interview_failed"
STAGE2_TRAINING = "training"
STAGE2_COMPLETED = "completed"
STAGE2_STATUSES = (
    STAGE2_AWAITING_INTERVIEW,
    STAGE2_INTERVIEW_NOTIFIED,
    STAGE2_INTERVIEW_PASSED,
    STAGE2_INTERVIEW_FAILED,
    STAGE2_TRAINING,
    STAGE2_COMPLETED,
)
STAGE2_LABELS = {
    STAGE2_AWAITING_INTERVIEW: "Awaiting interview",
    STAGE2_INTERVIEW_NOTIFIED: "Interview notified",
    STAGE2_INTERVIEW_PASSED: "Interview passed",
    STAGE2_INTERVIEW_FAILED: "Interview failed",
    STAGE2_TRAINING: "Training",
    STAGE2_COMPLETED: "Completed",
}

INTENTIONS = ("high", "medium", "low")
GENDERS = ("male", "female", "other")
SOURCES = ("offline", "xiaohongshu", "douyin", "kuaishou", "other")

AGE_MIN = 0
AGE_MAX = 120
