"""Audit report processor: summarizes a tenant's activity log."""

import json
from collections import Counter
from datetime import timedelta

from docqueue.integrations.s3 import S3Service
from docqueue.models import Job
from docqueue.organizations import OrganizationStore
from docqueue.payloads import AuditReportPayload
from docqueue.processors.base import BaseProcessor, ProcessorResult

DEFAULT_WINDOW = timedelta(days=30)


class AuditReportProcessor(BaseProcessor):
    job_type = "audit_report"
    payload_model = AuditReportPayload
    default_priority = 7

    def __init__(self, organizations: OrganizationStore, s3: S3Service):
        super().__init__()
        self.organizations = organizations
        self.s3 = s3

    async def process(self, payload: AuditReportPayload, job: Job) -> ProcessorResult:
        now = self.organizations.clock()
        end = payload.end_date or now
        start = payload.start_date or end - DEFAULT_WINDOW

        entries = self.organizations.get_activity(job.organization_id, since=start, until=end)

        by_action = Counter(entry.action for entry in entries)
        by_user = Counter(entry.user_id or "system" for entry in entries)

        report = {
            "organization_id": job.organization_id,
            "period": {"start": start.isoformat(), "end": end.isoformat()},
            "generated_at": now.isoformat(),
            "total_events": len(entries),
            "by_action": dict(by_action.most_common()),
            "by_user": dict(by_user.most_common()),
            "events": [
                {
                    "timestamp": entry.timestamp.isoformat(),
                    "user_id": entry.user_id,
                    "action": entry.action,
                    "resource_type": entry.resource_type,
                    "resource_id": entry.resource_id,
                    "resource_name": entry.resource_name,
                    "details": entry.get_details(),
                }
                for entry in entries
            ],
        }

        key = await self.s3.upload_audit_report(
            job.organization_id,
            json.dumps(report, default=str, indent=2).encode("utf-8"),
            generated_at=now,
        )

        return ProcessorResult(
            result={"key": key, "total_events": len(entries), "by_action": report["by_action"]}
        )
