# phaseflow package
# Workflow definition import and phased execution for AI-assisted content pipelines.
