# Copyright (c) 2026 Nenad Vasic. All rights reserved.
# Licensed under the Business Source License 1.1 (BSL-1.1)
# See LICENSE file in the project root for full license text.

"""
EchoVault Insights
The insight engine behind the EchoVault journal: goal lifecycle, mood patterns,
contradictions and burnout risk.
"""

try:
    from importlib.metadata import version
    __version__ = version("echovault-insights")
except Exception:
    __version__ = "0.1.0"
