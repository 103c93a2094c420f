"""JSON schemas for retrieval configuration files.

- retrieval_settings.schema.json: manager-level settings (work dir, cache root, cloud index)
- job_params.schema.json: job parameters grouped by section
- data_package.schema.json: jobs and datasets of a data package
"""
