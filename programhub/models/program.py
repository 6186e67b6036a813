"""
ProgramHub
Program domain models.

Models:
    - Program: top-level NGO program (e.g. "Literacy 2025")
    - Activity: a planned activity under a program, with outcome / KPI / timeline
    - Task: an actionable item under an activity, with M&E free-text fields

Hierarchy: Program 1─N Activity 1─N Task. Child rows cascade on parent delete.
There is no explicit ordering column; creation order (id) is display order.
"""

from datetime import datetime, timezone

from programhub.models import db

PROGRAM_STATUSES = ("planned", "active", "completed")
ACTIVITY_STATUSES = ("planned", "in-progress", "completed", "on-hold", "cancelled")
FOCUS_AREAS = (
    "GBV Management",
    "Survivor Empowerment",
    "Institutional Development",
    "SRH Rights",
    "Other",
)
DEFAULT_LOCATION = "Migori County"
TASK_STATUS_MIN = 0
TASK_STATUS_MAX = 10


def _iso(value):
    return value.isoformat() if value else None


# ── Program ──────────────────────────────────────────────────────────────────


class Program(db.Model):
    """An NGO program: yearly budget envelope for a focus area and location."""

    __tablename__ = "programs"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    year = db.Column(db.Integer, nullable=False)
    status = db.Column(
        db.String(30),
        default="planned",
        comment="planned | active | completed",
    )
    public_visible = db.Column(db.Boolean, default=True)
    budget_total = db.Column(db.Float, default=0.0)
    focus_area = db.Column(db.String(100), nullable=False)
    location = db.Column(db.String(200), default=DEFAULT_LOCATION)
    strategic_objective = db.Column(db.Text, nullable=True)
    program_image = db.Column(db.String(500), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # ── Relationships ────────────────────────────────────────────────────
    activities = db.relationship(
        "Activity", backref="program", lazy="dynamic",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="Activity.id",
    )

    def impact_metrics(self, activities=None) -> dict:
        """Roll-up figures shown on the program card.

        beneficiaries_reached mirrors the dashboard's historical definition
        (sum of activity progress) until a real beneficiary count exists.
        """
        activities = list(self.activities) if activities is None else activities
        total_progress = sum(a.progress or 0 for a in activities)
        return {
            "beneficiaries_reached": total_progress,
            "activities_completed": sum(1 for a in activities if a.status == "completed"),
            "budget_utilized": sum(a.budget_utilized or 0 for a in activities),
            "success_rate": round(total_progress / len(activities)) if activities else 0,
        }

    def to_dict(self, include_children=False):
        """Serialize program to dictionary."""
        result = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "year": self.year,
            "status": self.status,
            "public_visible": self.public_visible,
            "budget_total": self.budget_total,
            "focus_area": self.focus_area,
            "location": self.location,
            "strategic_objective": self.strategic_objective,
            "program_image": self.program_image,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_children:
            activities = list(self.activities)
            result["activities"] = [a.to_dict(include_children=True) for a in activities]
            result["impact_metrics"] = self.impact_metrics(activities)
        return result

    def __repr__(self):
        return f"<Program {self.id}: {self.name}>"


# ── Activity ─────────────────────────────────────────────────────────────────


class Activity(db.Model):
    """A program activity with its expected outcome, KPI and budget."""

    __tablename__ = "activities"

    id = db.Column(db.Integer, primary_key=True)
    program_id = db.Column(
        db.Integer, db.ForeignKey("programs.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    outcome = db.Column(db.Text, default="")
    kpi = db.Column(db.Text, default="")
    timeline_start = db.Column(db.Date, nullable=True)
    timeline_end = db.Column(db.Date, nullable=True)
    budget_allocated = db.Column(db.Float, default=0.0)
    budget_utilized = db.Column(db.Float, default=0.0)
    status = db.Column(
        db.String(30),
        default="planned",
        comment="planned | in-progress | completed | on-hold | cancelled",
    )
    responsible_person = db.Column(db.String(200), nullable=True)
    progress = db.Column(db.Integer, default=0, comment="0-100")
    challenges = db.Column(db.Text, nullable=True)
    next_steps = db.Column(db.Text, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    tasks = db.relationship(
        "Task", backref="activity", lazy="dynamic",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="Task.id",
    )

    def to_dict(self, include_children=False):
        result = {
            "id": self.id,
            "program_id": self.program_id,
            "name": self.name,
            "description": self.description,
            "outcome": self.outcome,
            "kpi": self.kpi,
            "timeline_start": _iso(self.timeline_start),
            "timeline_end": _iso(self.timeline_end),
            "budget_allocated": self.budget_allocated,
            "budget_utilized": self.budget_utilized,
            "status": self.status,
            "responsible_person": self.responsible_person,
            "progress": self.progress,
            "challenges": self.challenges,
            "next_steps": self.next_steps,
            "created_at": _iso(self.created_at),
        }
        if include_children:
            result["tasks"] = [t.to_dict() for t in self.tasks]
        return result

    def __repr__(self):
        return f"<Activity {self.id}: {self.name}>"


# ── Task ─────────────────────────────────────────────────────────────────────


class Task(db.Model):
    """An activity task; status is a 0-10 self-assessed completion score."""

    __tablename__ = "tasks"

    id = db.Column(db.Integer, primary_key=True)
    activity_id = db.Column(
        db.Integer, db.ForeignKey("activities.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    target = db.Column(db.Float, nullable=True)
    task_timeline = db.Column(db.String(200), nullable=True)
    activity_timeline = db.Column(db.Date, nullable=True, comment="Due date")
    budget = db.Column(db.Float, default=0.0)
    output = db.Column(db.Text, nullable=True)
    outcome = db.Column(db.Text, nullable=True)
    evaluation_criteria = db.Column(db.Text, nullable=True)
    risks = db.Column(db.Text, nullable=True)
    mitigation_measures = db.Column(db.Text, nullable=True)
    resource_person = db.Column(db.String(200), nullable=True)
    status = db.Column(db.Integer, default=0, comment="0-10")
    learning_and_development = db.Column(db.Text, nullable=True)
    self_evaluation = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "activity_id": self.activity_id,
            "name": self.name,
            "target": self.target,
            "task_timeline": self.task_timeline,
            "activity_timeline": _iso(self.activity_timeline),
            "budget": self.budget,
            "output": self.output,
            "outcome": self.outcome,
            "evaluation_criteria": self.evaluation_criteria,
            "risks": self.risks,
            "mitigation_measures": self.mitigation_measures,
            "resource_person": self.resource_person,
            "status": self.status,
            "learning_and_development": self.learning_and_development,
            "self_evaluation": self.self_evaluation,
            "notes": self.notes,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Task {self.id}: {self.name}>"
