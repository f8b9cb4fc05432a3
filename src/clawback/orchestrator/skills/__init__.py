"""Skills: single-step automations and their SKILL.md files."""
