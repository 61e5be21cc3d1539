from __future__ import annotations

from sqlalchemy import Boolean, Column, Float, Index, Integer, String, Text, UniqueConstraint

from db import Base


class User(Base):
    __tablename__ = "users"

    userId = Column(String, primary_key=True)
    name = Column(Text, nullable=False, default="")
    email = Column(String, nullable=False, unique=True, index=True)
    password_hash = Column(Text, nullable=False, default="")
    role = Column(String, nullable=False, default="user", index=True)  # user|lead
    phone = Column(String, nullable=False, default="")
    department = Column(String, nullable=False, default="", index=True)
    approved = Column(Boolean, nullable=False, default=False, index=True)
    approvedAt = Column(Text, nullable=False, default="")
    approvedBy = Column(String, nullable=False, default="")
    fcmToken = Column(Text, nullable=False, default="")
    isActive = Column(Boolean, nullable=False, default=True, index=True)
    lastLoginAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class Admin(Base):
    __tablename__ = "admins"

    adminId = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True, index=True)
    password_hash = Column(Text, nullable=False, default="")
    role = Column(String, nullable=False, default="admin")
    lastLoginAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")


class Project(Base):
    __tablename__ = "projects"
    __table_args__ = (
        Index("ix_projects_department_lead", "department", "assignedLead"),
        Index("ix_projects_status_active", "status", "isActive"),
    )

    projectId = Column(String, primary_key=True)
    name = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    department = Column(String, nullable=False, default="")
    assignedLead = Column(String, nullable=False, default="")
    progress = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="pending")
    priority = Column(String, nullable=False, default="medium")
    startDate = Column(Text, nullable=False, default="")
    deadline = Column(Text, nullable=False, default="")
    completedAt = Column(Text, nullable=False, default="")
    totalEstimatedHours = Column(Float, nullable=False, default=0.0)
    totalActualHours = Column(Float, nullable=False, default=0.0)
    basePoints = Column(Integer, nullable=False, default=100)
    # One-shot guard: flipped false -> true by a conditional UPDATE only.
    pointsDistributed = Column(Boolean, nullable=False, default=False)
    isActive = Column(Boolean, nullable=False, default=True)
    createdBy = Column(String, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class ProjectMember(Base):
    __tablename__ = "project_members"
    __table_args__ = (UniqueConstraint("projectId", "userId", name="uq_project_members_project_user"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    projectId = Column(String, nullable=False, index=True)
    userId = Column(String, nullable=False, index=True)
    addedBy = Column(String, nullable=False, default="")
    source = Column(String, nullable=False, default="ASSIGN")  # ASSIGN|AUTO_MODULE
    addedAt = Column(Text, nullable=False, default="")


class Module(Base):
    __tablename__ = "modules"
    __table_args__ = (Index("ix_modules_project_status", "projectId", "status"),)

    moduleId = Column(String, primary_key=True)
    projectId = Column(String, nullable=False)
    name = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    estimatedTime = Column(Float, nullable=False, default=0.0)
    actualTime = Column(Float, nullable=False, default=0.0)
    progress = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="pending")
    priority = Column(String, nullable=False, default="medium")
    startDate = Column(Text, nullable=False, default="")
    endDate = Column(Text, nullable=False, default="")
    notes = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class ModuleAssignee(Base):
    __tablename__ = "module_assignees"
    __table_args__ = (UniqueConstraint("moduleId", "userId", name="uq_module_assignees_module_user"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    moduleId = Column(String, nullable=False, index=True)
    userId = Column(String, nullable=False, index=True)


class DailyUpdate(Base):
    __tablename__ = "daily_updates"
    __table_args__ = (
        UniqueConstraint("userId", "moduleId", "date", name="uq_daily_updates_user_module_day"),
        Index("ix_daily_updates_user_date", "userId", "date"),
        Index("ix_daily_updates_project_date", "projectId", "date"),
    )

    # Monotonic insertion order; breaks createdAt ties inside one millisecond.
    seq = Column(Integer, primary_key=True, autoincrement=True)
    updateId = Column(String, nullable=False, unique=True, index=True)
    userId = Column(String, nullable=False)
    projectId = Column(String, nullable=False)
    moduleId = Column(String, nullable=False, index=True)
    date = Column(String, nullable=False)  # YYYY-MM-DD in APP_TIMEZONE
    hoursWorked = Column(Float, nullable=False, default=0.0)
    progressPercentage = Column(Integer, nullable=False, default=0)
    description = Column(Text, nullable=False, default="")
    blockers = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="on_track")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class UserStats(Base):
    __tablename__ = "user_stats"

    userId = Column(String, primary_key=True)
    totalProjects = Column(Integer, nullable=False, default=0)
    completedProjects = Column(Integer, nullable=False, default=0)
    ongoingProjects = Column(Integer, nullable=False, default=0)
    totalModules = Column(Integer, nullable=False, default=0)
    completedModules = Column(Integer, nullable=False, default=0)
    totalHoursWorked = Column(Float, nullable=False, default=0.0)
    totalPoints = Column(Integer, nullable=False, default=0)
    averageCompletionRate = Column(Float, nullable=False, default=0.0)
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class ProjectHistory(Base):
    __tablename__ = "project_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    userId = Column(String, nullable=False, index=True)
    projectId = Column(String, nullable=False, index=True)
    role = Column(String, nullable=False, default="member")  # lead|member
    pointsEarned = Column(Integer, nullable=False, default=0)
    hoursWorked = Column(Float, nullable=False, default=0.0)
    completedAt = Column(Text, nullable=False, default="", index=True)
    createdAt = Column(Text, nullable=False, default="")


class MonthlyStat(Base):
    __tablename__ = "monthly_stats"
    __table_args__ = (UniqueConstraint("userId", "month", name="uq_monthly_stats_user_month"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    userId = Column(String, nullable=False, index=True)
    month = Column(String, nullable=False)  # YYYY-MM
    projectsCompleted = Column(Integer, nullable=False, default=0)
    hoursWorked = Column(Float, nullable=False, default=0.0)
    pointsEarned = Column(Integer, nullable=False, default=0)


class Session(Base):
    __tablename__ = "sessions"

    sessionId = Column(String, primary_key=True)
    tokenHash = Column(String, nullable=False, unique=True, index=True)
    tokenPrefix = Column(String, nullable=False, default="", index=True)
    userId = Column(String, nullable=False, default="", index=True)
    userModel = Column(String, nullable=False, default="User")  # User|Admin
    email = Column(String, nullable=False, default="")
    role = Column(String, nullable=False, default="", index=True)
    department = Column(String, nullable=False, default="")
    issuedAt = Column(Text, nullable=False, default="")
    expiresAt = Column(Text, nullable=False, default="")
    lastSeenAt = Column(Text, nullable=False, default="")
    revokedAt = Column(Text, nullable=False, default="")


class RefreshToken(Base):
    __tablename__ = "refresh_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tokenHash = Column(String, nullable=False, unique=True, index=True)
    tokenPrefix = Column(String, nullable=False, default="")
    userId = Column(String, nullable=False, index=True)
    userModel = Column(String, nullable=False, default="User")  # User|Admin
    expiresAt = Column(Text, nullable=False, default="", index=True)
    isRevoked = Column(Boolean, nullable=False, default=False)
    ipAddress = Column(String, nullable=False, default="")
    userAgent = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")


class AuditLog(Base):
    __tablename__ = "audit_log"

    logId = Column(String, primary_key=True)
    entityType = Column(String, nullable=False, default="", index=True)
    entityId = Column(String, nullable=False, default="", index=True)
    action = Column(String, nullable=False, default="", index=True)
    fromState = Column(String, nullable=False, default="")
    toState = Column(String, nullable=False, default="")
    stageTag = Column(String, nullable=False, default="", index=True)
    remark = Column(Text, nullable=False, default="")
    actorUserId = Column(String, nullable=False, default="", index=True)
    actorRole = Column(String, nullable=False, default="", index=True)
    actorEmail = Column(Text, nullable=False, default="")
    at = Column(Text, nullable=False, default="", index=True)
    correlationId = Column(String, nullable=False, default="", index=True)
    metaJson = Column(Text, nullable=False, default="")
