"""PM sync module -- installations, field mapping, conflict handling and passes.

Provides pydantic schemas (Installation, EntityMapping, SyncLog), the
import/export pipelines, ConflictDetector/ConflictResolver, the
SyncOrchestrator that runs one pass, the per-installation SyncScheduler and
PMIntegrationService as the application-facing entry point.
"""
