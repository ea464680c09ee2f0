# phaseflow/config package
# Runtime configuration: YAML defaults with environment overrides.
