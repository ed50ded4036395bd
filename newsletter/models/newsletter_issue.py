"""
Newsletter issue model.
"""
from sqlalchemy import Column, DateTime, String, Text

from newsletter.database import Base


class NewsletterIssue(Base):
    """A published newsletter issue."""

    __tablename__ = "newsletter_issues"

    newsletter_issue_id = Column(String(36), primary_key=True)
    title = Column(Text, nullable=False)
    text_content = Column(Text, nullable=False)
    html_content = Column(Text, nullable=False)
    published_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<NewsletterIssue(id={self.newsletter_issue_id}, title={self.title!r})>"
