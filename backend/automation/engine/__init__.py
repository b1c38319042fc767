"""Workflow Engine: graph model, templates, expression evaluation, and run execution.

Modules:
- graph: WorkflowDefinition model, validation, cycle detection, topological sort
- template: ``{{path}}`` placeholder resolution
- safe_eval: restricted expression evaluator for advanced filters
- context: run/node execution contexts, NodeResult, cancellation token
- retry: exponential backoff policy
- executor: ExecutionEngine (dependency-ordered concurrent dispatch)
"""
