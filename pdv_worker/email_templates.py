import html
from datetime import datetime, timezone
from typing import Optional

from pdv_worker.parsing import markdown_to_html, markdown_to_text

_HIGHLIGHTS = [
    "Asset Data Valuation (PDV) calculations",
    "Preliminary Data Valuation questionnaire results",
    "Competitive analysis and market positioning",
    "Strategic recommendations",
]

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
  <head>
    <style>
      body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
      .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
      .header {{ background-color: #2563eb; color: white; padding: 20px; text-align: center; }}
      .content {{ background-color: #f9fafb; padding: 30px; }}
      .summary {{ border-left: 3px solid #2563eb; padding-left: 12px; margin: 20px 0; }}
      .footer {{ text-align: center; margin-top: 30px; color: #6b7280; font-size: 14px; }}
    </style>
  </head>
  <body>
    <div class="container">
      <div class="header">
        <h1>Your PDV Report is Ready</h1>
      </div>
      <div class="content">
        <p>Hello,</p>
        <p>Your <strong>{title}</strong> for {org} has been generated and is attached to this email.</p>
        {summary}<p>The report contains a comprehensive assessment of your data assets including:</p>
        <ul>
{highlights}
        </ul>
        <p>Please find the complete report in the PDF attachment.</p>
        <p>If you have any questions about your report, please don't hesitate to contact your advisor.</p>
      </div>
      <div class="footer">
        <p>&copy; {year} PDV Reports. All rights reserved.</p>
      </div>
    </div>
  </body>
</html>
"""


def report_title(org_name: str) -> str:
    return f"PDV Report - {org_name}"


def report_subject(org_name: str) -> str:
    return f"Your {report_title(org_name)} is Ready"


def attachment_name(org_name: str) -> str:
    return f"{report_title(org_name)}.pdf"


def render_html_body(org_name: str, summary_markdown: Optional[str] = None) -> str:
    """HTML body of the delivery email. ``summary_markdown`` is the pre-analysis summary, when one exists."""
    summary_html = markdown_to_html(summary_markdown)
    return _HTML_TEMPLATE.format(
        title=html.escape(report_title(org_name)),
        org=html.escape(org_name),
        summary=f'<div class="summary">{summary_html}</div>\n        ' if summary_html else "",
        highlights="\n".join(f"          <li>{item}</li>" for item in _HIGHLIGHTS),
        year=datetime.now(timezone.utc).year,
    )


def render_text_body(org_name: str, summary_markdown: Optional[str] = None) -> str:
    title = report_title(org_name)
    lines = [
        f"Your {title} is Ready",
        "",
        "Hello,",
        "",
        f"Your {title} for {org_name} has been generated and is attached to this email.",
        "",
    ]
    summary_text = markdown_to_text(summary_markdown)
    if summary_text:
        lines += [summary_text, ""]
    lines.append("The report contains a comprehensive assessment of your data assets including:")
    lines += [f"- {item}" for item in _HIGHLIGHTS]
    lines += [
        "",
        "Please find the complete report in the PDF attachment.",
        "",
        "If you have any questions about your report, please don't hesitate to contact your advisor.",
        "",
        f"(c) {datetime.now(timezone.utc).year} PDV Reports. All rights reserved.",
    ]
    return "\n".join(lines)
