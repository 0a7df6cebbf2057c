# -*- coding: utf-8 -*-
"""Stored avatar risk scan result per application"""

from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, String, Unicode, UnicodeText
from utils import database as db


class AvatarScan(db.BASE):
    """Latest avatar scan of the applicant, taken right after submission."""

    __tablename__ = "AvatarScan"

    ApplicationId = Column(String(36), ForeignKey("Application.Id", ondelete="CASCADE"), primary_key=True)
    AvatarUrl = Column(UnicodeText, nullable=False)
    NsfwScore = Column(Float, nullable=True)
    SkinEdgeScore = Column(Float, nullable=False, default=0.0)
    Flagged = Column(Boolean, nullable=False, default=False)
    Reason = Column(Unicode(16), nullable=False, default="none")
    ScannedAt = Column(DateTime, nullable=False)

    @classmethod
    def get(cls, application_id: str, session):
        """Returns the scan for the given application."""
        return session.query(cls).filter(cls.ApplicationId == application_id).first()

    @classmethod
    def upsert(cls, application_id: str, avatar_url: str, result, session):
        """Store a ``ScanResult``, replacing any previous scan of the same application."""
        scan = cls.get(application_id, session)
        if scan is None:
            scan = cls(ApplicationId=application_id)
            session.add(scan)
        scan.AvatarUrl = avatar_url
        scan.NsfwScore = result.nsfw_score
        scan.SkinEdgeScore = result.skin_edge_score
        scan.Flagged = result.flagged
        scan.Reason = result.reason
        scan.ScannedAt = datetime.now(UTC)
        session.flush()
        return scan
