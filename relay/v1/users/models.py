from sqlalchemy import Column, Integer, Table

from relay.infra.database import Base

# Association between users and roles, owned by the account management side
user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", Integer, primary_key=True),
    Column("role_id", Integer, primary_key=True, index=True),
)
