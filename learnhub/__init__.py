"""LearnHub Backend.

Data access and job dispatch core for the LearnHub learning management
system: cache-aside repositories over PostgreSQL and durable, prioritised
background job queues over Redis.

Copyright (C) 2025 Global Digital Labs (gdlabs.io)
SPDX-License-Identifier: LGPL-3.0-or-later
"""

__version__ = "1.0.0"
