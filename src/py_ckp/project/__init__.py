"""Project registry — registered projects and their port slots."""

from py_ckp.project.registry import ProjectEntry, ProjectRegistry

__all__ = ["ProjectEntry", "ProjectRegistry"]
