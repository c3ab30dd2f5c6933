from autoapply.models.application import Application, ApplicationEvent, ApplicationStatus
from autoapply.models.job import Job
from autoapply.models.profile import Profile

__all__ = [
    "Application",
    "ApplicationEvent",
    "ApplicationStatus",
    "Job",
    "Profile",
]
