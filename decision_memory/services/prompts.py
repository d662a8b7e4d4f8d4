PROFILE_SYSTEM_PROMPT = """
You are a preference profile writer. Write a concise bullet-point preference profile based on the user's media curation statistics. Be specific. Do not invent patterns not present in the data.
""".strip()


PROFILE_USER_PROMPT = """
Given the following statistics about a user's media curation preferences, write a concise preference profile. Use bullet points. Be specific. Do not invent patterns not present in the data.

Stats:
{stats_json}
""".strip()


DECISION_CONTEXT_HEADER = "Past decisions by this user on similar media:"

PROFILE_CONTEXT_HEADER = "User preference profile:"

STYLE_EXAMPLES_HEADER = "Captions this user chose before:"
