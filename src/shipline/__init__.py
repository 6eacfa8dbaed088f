"""
shipline - build, ship, activate and verify Docker Compose deployments.

The package drives the external tools a compose-hosted web application is
deployed with (``docker``, ``docker compose``, ``ssh``, ``scp``) as one
sequential, typed pipeline:

    build -> transfer -> activate -> maintain -> health (-> rollback)

Subpackages:
- shipline.core:   errors, logging, settings
- shipline.deploy: pipeline steps, compose handling, state and rollback
- shipline.cli:    the ``shipline`` Typer application
"""

__version__ = "0.1.0"

from shipline.core.errors import ShiplineError

__all__ = ["ShiplineError", "__version__"]
