# SPDX-License-Identifier: AGPL-3.0-or-later
"""Sync module - Reconciliation and orchestration."""
