import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


def with_context(prompt: str, context: Optional[str]) -> str:
    """Append earlier answers from the same report so estimates stay consistent."""
    if not context or not context.strip():
        return prompt
    return f"{prompt}\n\nContext already established for this organization (stay consistent with it):\n{context.strip()}"


class DataProfileRow(BaseModel):
    dataMetric: str = Field(description="Metric name")
    estimate: str = Field("", description="Estimated value, e.g. 75%")
    strategicSignificance: str = Field("", description="Why the metric matters")

    @field_validator("estimate", mode="before")
    @classmethod
    def _estimate_as_text(cls, v):
        if v is None:
            return ""
        # bare numbers in this column are percentages
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return f"{v:g}%"
        return v

    @field_validator("strategicSignificance", mode="before")
    @classmethod
    def _significance_as_text(cls, v):
        return "" if v is None else v


class DataSummary(BaseModel):
    summary: str = ""
    competitiveAdvantages: List[str] = Field(default_factory=list)
    dataProfileTable: List[DataProfileRow] = Field(default_factory=list)

    @field_validator("summary", mode="before")
    @classmethod
    def _summary_as_text(cls, v):
        return "" if v is None else v

    @field_validator("competitiveAdvantages", mode="before")
    @classmethod
    def _advantages_as_text(cls, v):
        if not isinstance(v, list):
            return []
        return [str(item) for item in v if item is not None]

    @field_validator("dataProfileTable", mode="before")
    @classmethod
    def _keep_valid_rows(cls, v):
        """Drop rows that cannot be read instead of rejecting the whole table."""
        if not isinstance(v, list):
            return []
        rows = []
        for item in v:
            try:
                rows.append(DataProfileRow.model_validate(item))
            except ValidationError as e:
                logger.warning("profile_row_dropped row=%r: %s", item, e.errors()[:1])
        return rows


EMPTY_SUMMARY = {"summary": "", "competitiveAdvantages": [], "dataProfileTable": []}


class PreAnalysisPrompts:
    overview = (
        "Provide a professional 5-line overview for {org_name}. Focus on their business model, "
        "industry and sector position, and key operations."
    )

    # key -> prompt; keys are the field names stored in the pre-analysis document
    metrics: Dict[str, str] = {
        "dataReliance": "Estimate the data reliance percentage and detailed analysis for {org_name}.",
        "dataAttribute": "Estimate the data attribute percentage and detailed analysis for {org_name}.",
        "dataUniqueness": "Estimate the data uniqueness percentage and detailed analysis for {org_name}.",
        "dataScarcity": "Estimate the data scarcity percentage and detailed analysis for {org_name}.",
        "dataOwnership": "Estimate the data ownership percentage and detailed analysis for {org_name}.",
        "sectorReliance": "What is the typical data reliance percentage for the sector that {org_name} operates in?",
    }

    data_collection = (
        "Provide a detailed analysis of the data collected by {org_name}, including:\n"
        "1. Types of unique data they collect\n"
        "2. Environmental/ESG data considerations\n"
        "3. Data collection methods and sources\n"
        "Format as a professional paragraph."
    )

    summary = (
        "Create a powerful and professional data summary for {org_name} including their competitive advantages.\n\n"
        "Provide the response in JSON format:\n"
        "{{\n"
        '  "summary": "Professional summary text",\n'
        '  "competitiveAdvantages": ["advantage 1", "advantage 2"],\n'
        '  "dataProfileTable": [\n'
        '    {{"dataMetric": "metric name", "estimate": "value", "strategicSignificance": "significance"}}\n'
        "  ]\n"
        "}}\n\n"
        "Respond with ONLY the JSON object, no other text."
    )


class SupplementaryPrompt:
    comparison = (
        "For {org_name}, create a comprehensive Data Profile and Competitive Moat comparison with their sector "
        "and geography across 5 data metrics - data reliance, data attribution, data uniqueness, data scarcity, "
        "and data ownership percentages.\n\n"
        "Provide response in JSON format:\n"
        "{{\n"
        '  "sectorName": "sector name",\n'
        '  "geographyName": "geography",\n'
        '  "comparisonTable": [\n'
        '    {{"dataMetric": "metric", "organizationValue": "value", "sectorValue": "value", "geographyValue": "value"}}\n'
        "  ],\n"
        '  "qualitativeComparison": "detailed multiparagraph text analysis of primary data moat including multiple pointers",\n'
        '  "radarChartData": {{\n'
        '    "data metrics": ["data reliance", "data scarcity"],\n'
        '    "organizationValues": [0, 0],\n'
        '    "sectorValues": [0, 0]\n'
        "  }}\n"
        "}}\n\n"
        "Respond with ONLY the JSON object, no other text."
    )

    @staticmethod
    def metrics_context(metrics: Dict[str, Optional[float]]) -> str:
        labels = {
            "dataReliance": "data reliance",
            "dataAttribute": "data attribution",
            "dataUniqueness": "data uniqueness",
            "dataScarcity": "data scarcity",
            "dataOwnership": "data ownership",
        }
        lines = [
            f"- {label}: {metrics[key]:g}%"
            for key, label in labels.items()
            if metrics.get(key) is not None
        ]
        if not lines:
            return ""
        return "Use these organization values in the organizationValue column and radar chart:\n" + "\n".join(lines)


class ValuationExtractionPrompt:
    system = (
        "You are a data extraction expert. Extract structured numerical data from unstructured text. "
        "Always respond with valid JSON only."
    )

    questions = [
        "How long has your business been collecting data?",
        "What percentage of business is attributable to data?",
        "What percentage of business is data reliant?",
        "What is the current market value of your business?",
        "For each year collecting data, what was the company valuation each year?",
    ]

    template = (
        "You are a data extraction expert. Extract structured numerical data from the following user responses.\n\n"
        "Questions and Answers:\n{qa_block}\n\n"
        "Extract and provide the following in JSON format:\n"
        "{{\n"
        '  "yearsCollectingData": <number of years as integer>,\n'
        '  "dataAttributablePercent": <percentage as decimal, e.g., 75 for 75%>,\n'
        '  "dataReliancePercent": <percentage as decimal, e.g., 80 for 80%>,\n'
        '  "currentCompanyValue": <current market value as number without commas or currency symbols>,\n'
        '  "yearlyValuations": [<array of company valuations for each year, starting from first year of data '
        "collection to present. If not provided by user, calculate: start at 10% of current value, increase by 10% "
        "of current value each year until reaching current value, then hold at current value>]\n"
        "}}\n\n"
        "Important:\n"
        "- All percentages should be decimals (e.g., 75 not 0.75)\n"
        "- All monetary values should be numbers without commas or symbols\n"
        "- yearlyValuations should be an array with length equal to yearsCollectingData\n"
        "- Current year is {year}\n\n"
        "Respond with ONLY the JSON object, no other text."
    )

    @classmethod
    def build(cls, answers: Dict[str, str]) -> str:
        qa_lines = []
        for i, question in enumerate(cls.questions, start=1):
            qa_lines.append(f"{i}. {question}\n   Answer: {answers.get(question, 'Not provided')}")
        return cls.template.format(qa_block="\n\n".join(qa_lines), year=datetime.now(timezone.utc).year)
