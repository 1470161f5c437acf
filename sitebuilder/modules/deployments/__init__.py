"""
Deployments Module - Black Box Interface

Purpose: Persist deployment status and build logs; read project settings
Interface: DeploymentSink (append_log, set_status, activate), ProjectReader (get_project)
Hidden: Redis key layout, terminal-status enforcement, active pointer swap

Can be replaced with a relational store implementing the same protocols.
"""

from .store import DeploymentSink, ProjectReader, RedisDeploymentStore, RedisProjectStore

__all__ = ["DeploymentSink", "ProjectReader", "RedisDeploymentStore", "RedisProjectStore"]
