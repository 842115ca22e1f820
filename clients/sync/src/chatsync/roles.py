"""Closed catalogue of portal roles."""

from __future__ import annotations

from enum import Enum


class Role(Enum):
    """Backend role tags with their display label and portal path."""

    OJT_HEAD = ("ojt-head", "OJT Head", "/ojt-head")
    OJT_COORDINATOR = ("ojt-coordinator", "OJT Coordinator", "/ojt-coordinator")
    EMPLOYER = ("employer", "Company Representative", "/company-representative")
    STUDENT_TRAINEE = ("student-trainee", "Student Trainee", "/student-trainee")
    SUPERADMIN = ("superadmin", "Super Admin", "/super-admin")
    JOB_PLACEMENT_HEAD = ("job-placement-head", "Job Placement", "/job-placement")
    SUPERVISOR = ("supervisor", "Training Supervisor", "/training-supervisor")
    ALUMNI = ("alumni", "Alumni", "/alumni")
    UNKNOWN = ("unknown", "Unknown Role", "/")

    def __init__(self, tag: str, label: str, path: str) -> None:
        self.tag = tag
        self.label = label
        self.path = path

    @classmethod
    def from_tag(cls, tag: str | None) -> "Role":
        """Parse a backend tag or route alias; anything else is ``UNKNOWN``."""

        if not isinstance(tag, str):
            return cls.UNKNOWN
        key = tag.strip().lower()
        key = _ALIASES.get(key, key)
        for role in cls:
            if role.tag == key:
                return role
        return cls.UNKNOWN

    @classmethod
    def from_path(cls, path: str) -> "Role | None":
        for role in cls:
            if role is not cls.UNKNOWN and role.path == path:
                return role
        return None


_ALIASES = {
    "company-representative": "employer",
    "super-admin": "superadmin",
    "job-placement": "job-placement-head",
    "training-supervisor": "supervisor",
}
