"""Database layer: declarative base, engine/session management, ORM immutability."""
