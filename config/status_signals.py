"""Static signals used when resolving companies and checking posting status.

Extend these lists as new job boards or closure wordings show up.
"""

# Phrases that mean a posting page is still served but the role is closed.
CLOSURE_PHRASES = [
    "position has been filled",
    "no longer accepting",
    "job has been closed",
    "this position is closed",
    "job is no longer available",
    "posting has expired",
    "this job has expired",
    "application period has ended",
    "position is no longer available",
    "job posting has been removed",
    "this role has been filled",
    "we are no longer accepting applications",
]

# HTTP status codes that mean the posting is gone for good.
CLOSED_STATUS_CODES = [404, 410]

# Hosts of applicant tracking systems. A posting URL on one of these says
# nothing about the hiring company's own domain.
ATS_HOSTS = [
    "boards.greenhouse.io",
    "job-boards.greenhouse.io",
    "boards-api.greenhouse.io",
    "jobs.lever.co",
    "api.lever.co",
    "jobs.ashbyhq.com",
    "apply.workable.com",
    "myworkdayjobs.com",
    "smartrecruiters.com",
    "jobs.smartrecruiters.com",
    "bamboohr.com",
    "recruitee.com",
    "breezy.hr",
    "linkedin.com",
    "indeed.com",
]

GREENHOUSE_HOSTS = [
    "boards.greenhouse.io",
    "job-boards.greenhouse.io",
    "boards-api.greenhouse.io",
]
