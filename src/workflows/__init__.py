"""
Driver workflows.

The CLI entrypoint remains `main.py` at the repo root. Each workflow here is a
reusable async function so it can be driven from tests or other tools.
"""
