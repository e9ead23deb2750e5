from automaton.skills.loader import discover_skills, load_skills, parse_skill_file

__all__ = ["discover_skills", "load_skills", "parse_skill_file"]
