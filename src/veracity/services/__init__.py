# SPDX-License-Identifier: MPL-2.0
"""Services for Veracity: fetching, verification, rebuilds and audit orchestration."""
