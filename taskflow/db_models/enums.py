from enum import Enum

class TaskStatus(str, Enum):
    PENDING = "Pending"
    ASSIGNED = "Assigned"
    IN_PROGRESS = "In Progress"
    SUBMITTED_FOR_REVIEW = "Submitted for Review"
    CHANGES_REQUESTED = "Changes Requested"
    APPROVED = "Approved"
    COMPLETED = "Completed"

class Role(str, Enum):
    ADMIN = "Admin"
    MEMBER = "Member"

class ReviewerPolicy(str, Enum):
    INSTANCE = "instance"
    NEXT_ASSIGNEE = "next_assignee"

class ActivityType(str, Enum):
    HISTORY = "history"
    COMMENT = "comment"
