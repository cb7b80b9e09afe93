"""
API module for blast control and monitoring
"""

from .main_api import BlastAPI
from .blast_routes import create_blast_routes
from .system_routes import create_system_routes

__all__ = ['BlastAPI', 'create_blast_routes', 'create_system_routes']
