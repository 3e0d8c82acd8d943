"""
vnqueue
=======

Hospital visit-queue client: patients track their ticket by Visit Number (VN)
or phone, staff call/skip/complete/recall tickets within a department.
"""

__version__ = "1.0.0"
