"""ORM models package.

Import all models here so that SQLAlchemy's metadata is fully populated
when Alembic runs autogenerate.
"""

from airouter.models.routing_decision import RoutingDecisionRecord

__all__ = ["RoutingDecisionRecord"]
