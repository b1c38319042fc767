"""Workflow automation engine package.

Subpackages:
- engine: Graph model, template engine, expression evaluation and run execution
- nodes: Executor registry and built-in trigger/transform/output/data nodes
- sandbox: Subprocess sandbox for user-supplied code
- services: Collaborator bundle injected into every execution context
"""
