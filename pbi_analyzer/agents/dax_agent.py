"""Natural-language to DAX translation agent."""

import logging
import re
from typing import Any, Dict

from pbi_analyzer.agents.base import BaseAgent
from pbi_analyzer.config import settings
from pbi_analyzer.schemas.agents import DaxInput, DaxOutput

logger = logging.getLogger(__name__)

_CODE_BLOCK_RE = re.compile(r"```(?:dax)?\s*\n?([\s\S]*?)```", re.IGNORECASE)
_EXPLANATION_RE = re.compile(r"EXPLANATION:\s*([\s\S]*?)$")


def parse_dax_response(content: str) -> Dict[str, str]:
    """Extract the query (first fenced block) and the EXPLANATION section."""
    code_match = _CODE_BLOCK_RE.search(content)
    query = code_match.group(1).strip() if code_match else content.strip()
    explanation_match = _EXPLANATION_RE.search(content)
    explanation = explanation_match.group(1).strip() if explanation_match else ""
    return {"query": query, "explanation": explanation}


class DaxAgent(BaseAgent):
    """Agent for turning a question into an EVALUATE query."""

    MODEL = settings.DAX_MODEL

    def _run(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Generate a DAX query for the prompt."""
        input_data = DaxInput(**payload)

        schema_block = ""
        if input_data.schema_text:
            schema_block = f"\n\nModel schema:\n{input_data.schema_text}"

        system = f"""You are a DAX query expert working with a Power BI Semantic Model. The user will describe what data they want to see, and you will generate a valid DAX query that answers the question.{schema_block}

Return your response in exactly this format:

DAX:
```
<your DAX query here>
```

EXPLANATION:
<brief explanation of what the query does>

Only output valid EVALUATE queries. Do not use DEFINE unless necessary."""

        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": f"Generate a DAX query for: {input_data.prompt}"},
        ]
        response = self.llm.chat_completion(
            model=self.MODEL,
            messages=messages,
            temperature=0.1,
            max_tokens=2000,
        )

        output = DaxOutput(**parse_dax_response(response))
        logger.info(f"Generated DAX query of {len(output.query)} characters")
        return output.model_dump()

    def _validate(self, result: Dict[str, Any]) -> bool:
        """Validate a query was produced."""
        return bool(result.get("query"))
