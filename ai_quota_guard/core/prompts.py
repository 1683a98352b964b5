"""
Prompt templates for the AI tools.

Builders return ready-to-send AIRequests whose wording matches the section
headers the response parsers look for.
"""

from typing import Dict, Optional

from .errors import validation_error
from ai_quota_guard.sdk.types import AIRequest

REGEX_SYSTEM_PROMPT = (
    "You are a regex expert. Generate regex patterns based on natural language descriptions. "
    "Always provide the pattern, explanation, and examples. Be precise and ensure the pattern "
    "works correctly for the specified flavor."
)

REGEX_USER_TEMPLATE = """Generate a {flavor} regex pattern for: {description}

Respond in the following exact format (use these exact headers):

PATTERN:
[the regex pattern here, without delimiters]

FLAGS:
[any flags needed, e.g., g, i, m - or "none" if no flags needed]

EXPLANATION:
[detailed explanation of each part of the regex]

MATCHES:
- [example 1 that should match]
- [example 2 that should match]
- [example 3 that should match]

NON-MATCHES:
- [example 1 that should NOT match]
- [example 2 that should NOT match]
- [example 3 that should NOT match]"""

SQL_SYSTEM_PROMPT = (
    "You are a SQL expert. Generate clean, efficient, and well-formatted SQL queries based on "
    "natural language descriptions. Always follow best practices for the specified SQL dialect."
)

SQL_USER_TEMPLATE = """Generate a {dialect} SQL query for: {description}

{schema_context}

Respond in the following exact format:

QUERY:
[the SQL query here, properly formatted with indentation]

EXPLANATION:
[brief explanation of what the query does and how it works]"""

JSON_SYSTEM_PROMPT = (
    "You are a JSON expert. Generate valid, well-structured JSON based on natural language "
    "descriptions. Always ensure the output is valid JSON that can be parsed without errors."
)

JSON_SCHEMA_TEMPLATE = """Generate a JSON Schema for: {description}

Respond with ONLY valid JSON Schema (no markdown code blocks, no explanations before or after). The schema should follow JSON Schema draft-07 or later specification and include:
- Appropriate type definitions
- Required fields where applicable
- Descriptions for fields
- Any relevant constraints (minLength, maxLength, minimum, maximum, pattern, etc.)"""

JSON_SAMPLE_TEMPLATE = """Generate {count} sample JSON object(s) for: {description}

Respond with ONLY valid JSON (no markdown code blocks, no explanations before or after).
- If generating multiple objects, return them as a JSON array
- If generating a single object, return just the object
- Use realistic, varied sample data
- Ensure all values are appropriate for their fields"""

WRITING_SYSTEM_PROMPT = (
    "You are a professional writing assistant. Help improve text while preserving code blocks "
    "(text between ``` markers) and technical terms exactly as they appear. Only modify the "
    "prose, not the code."
)

WRITING_TEMPLATES: Dict[str, str] = {
    "improve": (
        "Improve the clarity and readability of the following text while preserving its meaning "
        "and any code blocks:\n\n{input}\n\nRespond with ONLY the improved text, no explanations."
    ),
    "grammar": (
        "Fix any grammar and spelling errors in the following text while preserving code blocks:"
        "\n\n{input}\n\nRespond with ONLY the corrected text, no explanations."
    ),
    "concise": (
        "Make the following text more concise while preserving the key information and any code "
        "blocks:\n\n{input}\n\nRespond with ONLY the concise version, no explanations."
    ),
    "formal": (
        "Rewrite the following text in a more formal, professional tone while preserving code "
        "blocks:\n\n{input}\n\nRespond with ONLY the formal version, no explanations."
    ),
    "casual": (
        "Rewrite the following text in a more casual, conversational tone while preserving code "
        "blocks:\n\n{input}\n\nRespond with ONLY the casual version, no explanations."
    ),
}

SUMMARY_TEMPLATES: Dict[str, str] = {
    "brief": (
        "Summarize the following text in 2-3 concise sentences, capturing only the most essential "
        "points:\n\n{input}"
    ),
    "standard": (
        "Provide a comprehensive summary of the following text. Include the main ideas, key "
        "points, and any important conclusions:\n\n{input}"
    ),
    "detailed": """Provide a detailed summary of the following text. Structure your response with:
1. Main thesis/topic
2. Key points (bulleted)
3. Supporting details
4. Conclusions or implications

Text:
{input}""",
}

SUMMARY_MAX_TOKENS = {"brief": 256, "standard": 512, "detailed": 1024}

CODE_EXPLAIN_SYSTEM_PROMPT = (
    "You are an expert programmer who explains code clearly. Analyze the provided code and "
    "explain what it does. If you identify any security issues or potential improvements, "
    "include them in your response."
)

CODE_EXPLAIN_TEMPLATES: Dict[str, str] = {
    "beginner": """Explain the following {language} code in simple terms that a beginner programmer would understand. Avoid technical jargon and use analogies where helpful:

```{language}
{code}
```

Provide:
1. A brief overview of what the code does (2-3 sentences)
2. A step-by-step breakdown of the key parts in simple language
3. Any potential issues or improvements (explained simply)""",
    "intermediate": """Explain the following {language} code at an intermediate level:

```{language}
{code}
```

Provide:
1. A brief overview of what the code does
2. A breakdown of the key parts with technical details
3. Any potential security issues or concerns
4. Suggestions for improvements or best practices""",
    "expert": """Provide an in-depth technical analysis of the following {language} code:

```{language}
{code}
```

Provide:
1. A concise overview of the code's purpose and architecture
2. Detailed analysis of algorithms, data structures, and design patterns used
3. Time and space complexity analysis where applicable
4. Security vulnerabilities and potential attack vectors
5. Performance optimization opportunities
6. Code quality and maintainability suggestions
7. Alternative approaches or implementations to consider""",
}

CODE_EXPLAIN_MAX_TOKENS = {"beginner": 1024, "intermediate": 2048, "expert": 4096}

JSON_MODES = ("schema", "sample")
MAX_SAMPLE_COUNT = 10


def _require(value: str, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise validation_error(f"{name} is required and cannot be empty")
    return value.strip()


def build_regex_request(description: str, flavor: str = "JavaScript") -> AIRequest:
    prompt = REGEX_USER_TEMPLATE.format(flavor=flavor, description=_require(description, "description"))
    return AIRequest(prompt=prompt, system_prompt=REGEX_SYSTEM_PROMPT, max_tokens=1024, temperature=0.3)


def build_sql_request(description: str, dialect: str = "PostgreSQL", schema: Optional[str] = None) -> AIRequest:
    if schema and schema.strip():
        schema_context = f"Table schema context:\n```sql\n{schema.strip()}\n```"
    else:
        schema_context = "No table schema provided."
    prompt = SQL_USER_TEMPLATE.format(
        dialect=dialect,
        description=_require(description, "description"),
        schema_context=schema_context,
    )
    return AIRequest(prompt=prompt, system_prompt=SQL_SYSTEM_PROMPT, max_tokens=2048, temperature=0.3)


def build_json_request(description: str, mode: str = "sample", count: int = 1) -> AIRequest:
    """Build a JSON schema or sample-data request.

    Raises:
        AIError: validation error for an unknown mode or a count outside 1-10
    """
    description = _require(description, "description")
    if mode == "schema":
        prompt = JSON_SCHEMA_TEMPLATE.format(description=description)
    elif mode == "sample":
        if not 1 <= count <= MAX_SAMPLE_COUNT:
            raise validation_error(f"count must be between 1 and {MAX_SAMPLE_COUNT}")
        prompt = JSON_SAMPLE_TEMPLATE.format(count=count, description=description)
    else:
        raise validation_error(f"mode must be one of: {list(JSON_MODES)}")
    return AIRequest(prompt=prompt, system_prompt=JSON_SYSTEM_PROMPT, max_tokens=2048, temperature=0.3)


def build_writing_prompt(action: str, text: str) -> str:
    template = WRITING_TEMPLATES.get(action)
    if template is None:
        raise validation_error(f"Unknown writing action: {action}")
    return template.replace("{input}", text)


def build_summary_request(text: str, length: str = "standard") -> AIRequest:
    """Build a summarization request; longer summaries get a larger token budget.

    Raises:
        AIError: validation error for empty text or an unknown length
    """
    template = SUMMARY_TEMPLATES.get(length)
    if template is None:
        raise validation_error(f"length must be one of: {list(SUMMARY_TEMPLATES)}")
    prompt = template.replace("{input}", _require(text, "text"))
    return AIRequest(prompt=prompt, max_tokens=SUMMARY_MAX_TOKENS[length], temperature=0.5)


def build_code_explain_request(code: str, language: str = "JavaScript", depth: str = "intermediate") -> AIRequest:
    """Build a code explanation request at the given depth.

    Args:
        code: Source code to explain
        language: Display name of the code's language, e.g. "Python"
        depth: One of beginner, intermediate, expert

    Raises:
        AIError: validation error for empty code or an unknown depth
    """
    template = CODE_EXPLAIN_TEMPLATES.get(depth)
    if template is None:
        raise validation_error(f"depth must be one of: {list(CODE_EXPLAIN_TEMPLATES)}")
    prompt = template.format(language=language, code=_require(code, "code"))
    return AIRequest(
        prompt=prompt,
        system_prompt=CODE_EXPLAIN_SYSTEM_PROMPT,
        max_tokens=CODE_EXPLAIN_MAX_TOKENS[depth],
        temperature=0.3,
    )
