"""
WAF Configuration Database Models.

The synchronizable part of the WAF configuration:
- Domains (with upstreams and load balancer settings)
- SSL Certificates
- ModSecurity CRS rule toggles and custom rules
- ACL rules
- Notification channels and alert rules
- User accounts
- Raw proxy configuration blocks

Every table has a natural key so that a slave can mirror the master's rows
without sharing database ids.
"""

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.sql import func

from wafsync.core.database import Base


class Domain(Base):
    """Proxied domain."""

    __tablename__ = "domains"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), unique=True, nullable=False)
    status = Column(String(20), default="active", nullable=False)  # active, inactive, error
    ssl_enabled = Column(Boolean, default=False, nullable=False)
    modsec_enabled = Column(Boolean, default=True, nullable=False)

    # [{"host", "port", "protocol", "ssl_verify", "weight", "max_fails", "fail_timeout"}]
    upstreams = Column(JSON, default=list, nullable=False)
    # {"algorithm", "health_check_enabled", "health_check_path", ...} or null
    load_balancer = Column(JSON)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<Domain(name={self.name}, status={self.status})>"


class SSLCertificate(Base):
    """SSL certificate bound to a domain."""

    __tablename__ = "ssl_certificates"
    __table_args__ = (
        UniqueConstraint("domain_name", "common_name", name="uq_ssl_certificates_domain_cn"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    domain_name = Column(String(255), nullable=False)
    common_name = Column(String(255), nullable=False)
    sans = Column(JSON, default=list, nullable=False)
    issuer = Column(String(255))
    certificate = Column(Text, nullable=False)
    private_key = Column(Text, nullable=False)
    chain = Column(Text)
    auto_renew = Column(Boolean, default=True, nullable=False)
    valid_from = Column(DateTime(timezone=True))
    valid_to = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class ModSecCRSRule(Base):
    """OWASP CRS rule file toggle."""

    __tablename__ = "modsec_crs_rules"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    rule_file = Column(String(255), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    category = Column(String(100), nullable=False)
    description = Column(Text, default="", nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
    paranoia = Column(Integer, default=1, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class ModSecCustomRule(Base):
    """Operator-written ModSecurity rule."""

    __tablename__ = "modsec_custom_rules"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), unique=True, nullable=False)
    category = Column(String(100), nullable=False)
    rule_content = Column(Text, nullable=False)
    description = Column(Text)
    enabled = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class AclRule(Base):
    """Access control rule."""

    __tablename__ = "acl_rules"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), unique=True, nullable=False)
    type = Column(String(20), nullable=False)  # whitelist, blacklist
    condition_field = Column(String(50), nullable=False)  # ip, geoip, user_agent, url, method, header
    condition_operator = Column(String(20), nullable=False)  # equals, contains, regex
    condition_value = Column(String(1000), nullable=False)
    action = Column(String(20), nullable=False)  # allow, deny, challenge
    enabled = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class NotificationChannel(Base):
    """Alert delivery channel."""

    __tablename__ = "notification_channels"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), unique=True, nullable=False)
    type = Column(String(20), nullable=False)  # email, telegram
    enabled = Column(Boolean, default=True, nullable=False)
    config = Column(JSON, default=dict, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class AlertRule(Base):
    """Threshold alert, delivered through channels referenced by name."""

    __tablename__ = "alert_rules"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), unique=True, nullable=False)
    condition = Column(String(500), nullable=False)
    threshold = Column(Integer, nullable=False)
    severity = Column(String(20), default="warning", nullable=False)  # critical, warning, info
    enabled = Column(Boolean, default=True, nullable=False)
    check_interval = Column(Integer, default=60, nullable=False)
    channels = Column(JSON, default=list, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class User(Base):
    """Portal user account. Passwords are stored and synced as hashes."""

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    username = Column(String(100), unique=True, nullable=False)
    email = Column(String(255), nullable=False)
    full_name = Column(String(255), default="", nullable=False)
    password = Column(String(255), nullable=False)
    role = Column(String(20), default="viewer", nullable=False)  # admin, moderator, viewer
    status = Column(String(20), default="active", nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class ProxyConfig(Base):
    """Raw nginx configuration block included verbatim."""

    __tablename__ = "proxy_configs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), unique=True, nullable=False)
    content = Column(Text, nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
