"""Tool instance commands against a Toolbox management agent."""
