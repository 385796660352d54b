"""signstore: transactional persistence for document signing transfers.

Database handles schema and atomic units; repositories map rows to entities;
services.workflow_svc.WorkflowManager bundles multi-entity writes.
"""
from __future__ import annotations

__version__ = "0.1.0"
