"""Route tables of the REST API, one module per resource."""

from . import agent, conversations, git, optimization, projects, ralph_loop, settings, shell, system

ROUTE_TABLES = [
    system.routes,
    settings.routes,
    projects.routes,
    agent.routes,
    conversations.routes,
    shell.routes,
    ralph_loop.routes,
    git.routes,
    optimization.routes,
]
