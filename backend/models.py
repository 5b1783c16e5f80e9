"""
SQLAlchemy database models

Minimal slice of the studio schema that the media pipeline reads and writes.
Everything else (bookings, invoices, services...) lives in the main application.
"""

from datetime import datetime
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Text, JSON
from sqlalchemy.orm import relationship
from database import Base


# Gallery status constants
class GalleryStatus:
    """Constants for gallery status values"""
    DRAFT = "DRAFT"
    READY = "READY"
    DELIVERED = "DELIVERED"

    @classmethod
    def published(cls):
        """Statuses visible to the public"""
        return {cls.READY, cls.DELIVERED}


# Role constants supplied by the session layer
class Roles:
    """Constants for caller roles"""
    TENANT_ADMIN = "TENANT_ADMIN"
    TEAM_MEMBER = "TEAM_MEMBER"
    CLIENT = "CLIENT"

    @classmethod
    def staff(cls):
        """Roles that count as studio staff"""
        return {cls.TENANT_ADMIN, cls.TEAM_MEMBER}


class Tenant(Base):
    """
    Studio account owning galleries and the storage-provider connection
    """
    __tablename__ = "tenants"

    id = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=False, default="")

    # Storage provider connection
    storage_provider = Column(String, nullable=False, default="DROPBOX")  # DROPBOX, GOOGLE_DRIVE
    dropbox_access_token = Column(Text, nullable=True)
    dropbox_refresh_token = Column(Text, nullable=True)

    # Branding
    logo_url = Column(String, nullable=True)

    # Feature settings, e.g. {"aiSuite": {"enabled": true}}
    settings = Column(JSON, nullable=True, default=dict)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    galleries = relationship("Gallery", back_populates="tenant")

    def __repr__(self):
        return f"<Tenant(id={self.id}, provider={self.storage_provider})>"


class Client(Base):
    """
    End client of a studio; may carry its own watermark
    """
    __tablename__ = "clients"

    id = Column(String, primary_key=True, index=True)
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False, default="")

    watermark_url = Column(String, nullable=True)
    # {"x": 50, "y": 50, "scale": 100, "opacity": 60} - percentages
    watermark_settings = Column(JSON, nullable=True)

    def __repr__(self):
        return f"<Client(id={self.id}, tenant_id={self.tenant_id})>"


class Gallery(Base):
    """
    Delivered photo gallery backed by folders in the tenant's storage

    The `metadata` column is a free-form JSON document. Keys used here:
    imageFolders, dropboxLink, aiSuite, aiSocialVideo, videoLinks.
    """
    __tablename__ = "galleries"

    id = Column(String, primary_key=True, index=True)
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    client_id = Column(String, ForeignKey("clients.id", ondelete="SET NULL"), nullable=True)

    title = Column(String, nullable=False, default="Gallery")
    status = Column(String, nullable=False, default=GalleryStatus.DRAFT, index=True)
    is_locked = Column(Boolean, nullable=False, default=False)
    watermark_enabled = Column(Boolean, nullable=False, default=False)

    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True, default=dict)

    deleted_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    tenant = relationship("Tenant", back_populates="galleries")
    client = relationship("Client")

    def __repr__(self):
        return f"<Gallery(id={self.id}, status={self.status}, locked={self.is_locked})>"
