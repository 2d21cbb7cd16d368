"""Project-specific framework utilities.

This package contains the structural pieces of the application that sit on top
of the orchestration kernel: configuration parsing, the pipeline-definition
compiler, trigger matching, the run context contract, and run records.

Common entrypoints:

- `ci_pipeline.framework.config`: `RunConfig.from_dict` and strict value parsers
- `ci_pipeline.framework.definition`: YAML definition -> validated StageGroups
- `ci_pipeline.framework.records`: run summary, JSONL run index, build history

For reusable, project-agnostic orchestration primitives, use `cikit`.
"""
