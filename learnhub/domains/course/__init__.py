# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Course domain: authoring and publishing."""

from learnhub.domains.course.service import CourseService

__all__ = ["CourseService"]
