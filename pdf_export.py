# pdf_export.py
"""
Export maintenance results and the due/overdue summary to PDF using reportlab.
Portrait, black and white. Result PDFs: logo, instrument and result details,
one table per test section with error/pass recomputed from the measured
values, overall verdict, notes at bottom. Summary PDFs: overdue, in-progress
and upcoming tables plus an on-time vs overdue bar chart rendered with
matplotlib.
"""

from datetime import date
from pathlib import Path
import io
import re

from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch
from reportlab.platypus import (
    SimpleDocTemplate,
    Paragraph,
    Table,
    TableStyle,
    Image,
    Spacer,
    KeepTogether,
)

from database import get_base_dir
from domain.models import SectionType
from evaluation_service import STATE_EVALUATED, evaluate_section, evaluate_template

# Black and white only
BLACK = colors.HexColor("#000000")
WHITE = colors.HexColor("#ffffff")
LIGHT_GREY = colors.HexColor("#e6e6e6")


def _safe_filename(s: str) -> str:
    """Return a string safe for use in filenames."""
    s = re.sub(r'[<>:"/\\|?*]', "_", s)
    return s.strip() or "unknown"


def _escape(text) -> str:
    """Escape text for reportlab Paragraph markup."""
    return (
        str(text)
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace("\n", "<br/>")
    )


def _logo_path() -> Path:
    """Path to logo.png (centered at top)."""
    return get_base_dir() / "logo.png"


def _fmt(value) -> str:
    if value is None:
        return "—"
    if isinstance(value, float):
        return f"{value:g}"
    return str(value)


def _verdict(passed) -> str:
    if passed is None:
        return "—"
    return "PASS" if passed else "FAIL"


def _styles() -> dict:
    styles = getSampleStyleSheet()
    return {
        "small": ParagraphStyle(
            name="Small",
            parent=styles["Normal"],
            fontName="Helvetica",
            fontSize=8,
            leading=8 * 1.5,
            textColor=BLACK,
        ),
        "title": ParagraphStyle(
            name="PDFTitle",
            parent=styles["Normal"],
            fontName="Helvetica-Bold",
            fontSize=12,
            leading=12 * 1.5,
            alignment=1,
            textColor=BLACK,
        ),
        "heading": ParagraphStyle(
            name="SectionHeading",
            parent=styles["Normal"],
            fontName="Helvetica-Bold",
            fontSize=9,
            leading=9 * 1.4,
            textColor=BLACK,
        ),
        "header": ParagraphStyle(
            name="TableHeader",
            parent=styles["Normal"],
            fontName="Helvetica-Bold",
            fontSize=7,
            leading=8,
            textColor=WHITE,
            alignment=1,
        ),
        "cell": ParagraphStyle(
            name="TableCell",
            parent=styles["Normal"],
            fontName="Helvetica",
            fontSize=7,
            leading=8,
            textColor=BLACK,
            alignment=1,
        ),
    }


def _new_doc(output_path: Path) -> SimpleDocTemplate:
    return SimpleDocTemplate(
        str(output_path),
        pagesize=letter,
        rightMargin=0.5 * inch,
        leftMargin=0.5 * inch,
        topMargin=0.4 * inch,
        bottomMargin=0.4 * inch,
    )


def _logo_flowables() -> list:
    logo_path = _logo_path()
    if not logo_path.is_file():
        return []
    img = Image(str(logo_path))
    # Preserve aspect ratio while sizing
    max_h = 0.65 * inch
    max_w = 1.9 * inch
    ow = float(getattr(img, "imageWidth", img.drawWidth) or img.drawWidth)
    oh = float(getattr(img, "imageHeight", img.drawHeight) or img.drawHeight)
    if ow > 0 and oh > 0:
        scale = min(max_w / ow, max_h / oh, 1.0)
        img.drawWidth = ow * scale
        img.drawHeight = oh * scale
    logo_table = Table([[img]], colWidths=[7.5 * inch])
    logo_table.setStyle(TableStyle([("ALIGN", (0, 0), (-1, -1), "CENTER")]))
    return [logo_table, Spacer(1, 0.08 * inch)]


def _grid_table(header: list[str], rows: list[list], st: dict, col_widths=None) -> Table:
    data = [[Paragraph(_escape(h), st["header"]) for h in header]]
    for row in rows:
        data.append([Paragraph(_escape(c), st["cell"]) for c in row])
    table = Table(data, colWidths=col_widths, repeatRows=1)
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), BLACK),
        ("GRID", (0, 0), (-1, -1), 0.5, BLACK),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("TOPPADDING", (0, 0), (-1, -1), 3),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 3),
    ]))
    return table


def _section_rows(section) -> tuple[list[str], list[list]]:
    """Header and body rows for one test section, with evaluation recomputed."""
    evaluation = {r.row_id: r for r in evaluate_section(section).rows}
    unit = section.unit or ""
    if section.type is SectionType.TOLERANCE:
        header = ["Parameter", "Reference", "Measured", "Error", f"Tolerance (±{_fmt(section.tolerance)})", "Result"]
    elif section.type is SectionType.RANGE:
        header = ["Parameter", "Min", "Max", "Measured", "Result"]
    else:
        header = ["Parameter", "Value", "Unit"]
    body = []
    for row in section.rows:
        ev = evaluation[row.id]
        result = _verdict(ev.passed) if ev.state == STATE_EVALUATED else ev.state.replace("_", " ")
        if section.type is SectionType.TOLERANCE:
            body.append([row.label, _fmt(row.reference), _fmt(row.measured), _fmt(ev.error), unit, result])
        elif section.type is SectionType.RANGE:
            body.append([row.label, _fmt(row.min), _fmt(row.max), _fmt(row.measured), result])
        else:
            body.append([row.label, _fmt(row.measured), row.unit or unit])
    return header, body


def export_result_to_pdf(repo, result_id: str, output_path: str | Path) -> None:
    """
    Export a single maintenance result to a PDF file.
    Layout: logo, details (each on own line), one table per test section,
    overall verdict, notes at bottom.
    """
    output_path = Path(output_path)
    result = repo.get_result(result_id)
    if not result:
        raise ValueError(f"Maintenance result {result_id} not found.")
    instrument = repo.get_instrument(result.instrument_id)
    event = repo.get_event(result.event_id)
    template = repo.get_template(result.template_id) if result.template_id else None

    st = _styles()
    doc = _new_doc(output_path)
    story = _logo_flowables()

    eqp_id = (instrument.eqp_id if instrument else None) or "—"
    story.append(Paragraph(f"Maintenance Record - {_escape(eqp_id)}", st["title"]))
    story.append(Spacer(1, 0.1 * inch))

    details_lines = [
        f"<b>Instrument:</b> {_escape(instrument.instrument_type or '—') if instrument else '—'}",
        f"<b>Make / Model:</b> {_escape(instrument.make or '—')} / {_escape(instrument.model or '—')}"
        if instrument else "<b>Make / Model:</b> —",
        f"<b>Serial No.:</b> {_escape(instrument.serial_number or '—') if instrument else '—'}",
        f"<b>Location:</b> {_escape(instrument.location or '—') if instrument else '—'}",
        f"<b>Maintenance Type:</b> {_escape(event.type) if event else '—'}",
        f"<b>Due Date:</b> {event.due_date.isoformat() if event else '—'}",
        f"<b>Completed Date:</b> {result.completed_date.isoformat()}",
        f"<b>Result Type:</b> {result.result_type.value.replace('_', ' ').title()}",
        f"<b>Recorded By:</b> {_escape(result.recorded_by or '—')}",
    ]
    if template:
        details_lines.append(f"<b>Template:</b> {_escape(template.name)}")
    if result.document_url:
        details_lines.append(f"<b>Document:</b> {_escape(result.document_url)}")
    story.append(Paragraph("<br/>".join(details_lines), st["small"]))
    story.append(Spacer(1, 0.12 * inch))

    for section in result.test_data:
        header, body = _section_rows(section)
        heading = Paragraph(_escape(section.title or section.type.value.title()), st["heading"])
        table = _grid_table(header, body, st)
        # Tables do not split across pages
        story.append(KeepTogether([heading, Spacer(1, 0.04 * inch), table]))
        story.append(Spacer(1, 0.12 * inch))

    if result.test_data:
        overall = evaluate_template(result.test_data)
        summary = (
            f"<b>Overall:</b> {_verdict(overall.passed)} "
            f"({overall.passed_rows} passed, {overall.failed_rows} failed, "
            f"{overall.incomplete_rows} incomplete)"
        )
        story.append(Paragraph(summary, st["small"]))
        story.append(Spacer(1, 0.1 * inch))

    if result.notes:
        story.append(Paragraph(f"<b>Notes:</b><br/>{_escape(result.notes)}", st["small"]))

    doc.build(story)


def _render_trend_to_png(points) -> bytes:
    """
    Render on-time vs overdue counts per month as a grouped bar chart.
    Returns PNG bytes for embedding in the PDF.
    """
    import matplotlib  # type: ignore[import-untyped]
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt  # type: ignore[import-untyped]
    import numpy as np  # type: ignore[import-untyped]

    if not points:
        return b""
    x = np.arange(len(points))
    width = 0.38
    fig, ax = plt.subplots(figsize=(6, 3))
    ax.bar(x - width / 2, [p.on_time for p in points], width, label="On time",
           color="white", edgecolor="black", hatch="//")
    ax.bar(x + width / 2, [p.overdue for p in points], width, label="Overdue",
           color="black", edgecolor="black")
    ax.set_xticks(x)
    ax.set_xticklabels([p.label for p in points], fontsize=8)
    ax.set_title("Maintenance completion (last %d months)" % len(points), fontsize=9)
    ax.tick_params(labelsize=7)
    ax.yaxis.get_major_locator().set_params(integer=True)
    ax.legend(fontsize=7)
    ax.grid(True, axis="y", linestyle=":", alpha=0.7)
    fig.tight_layout()
    buf = io.BytesIO()
    fig.savefig(buf, format="png", dpi=120, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    buf.seek(0)
    return buf.read()


def export_maintenance_summary_to_pdf(repo, output_path: str | Path, now: date, horizon_days: int | None = None) -> None:
    """
    Export the due/overdue report for `now` plus the six-month completion chart.
    Materializes due cycles first so the tables reflect the current schedule.
    """
    from services.clock import FixedClock
    from services.maintenance_service import MaintenanceService

    output_path = Path(output_path)
    service = MaintenanceService(repo, FixedClock(now), horizon_days=horizon_days)
    report = service.get_due_and_overdue(now).value
    trend = service.get_completion_trend(now)

    st = _styles()
    doc = _new_doc(output_path)
    story = _logo_flowables()
    story.append(Paragraph(f"Maintenance Summary - {now.isoformat()}", st["title"]))
    story.append(Spacer(1, 0.1 * inch))
    story.append(Paragraph(
        f"<b>Overdue:</b> {len(report.overdue)}<br/>"
        f"<b>In Progress:</b> {len(report.in_progress)}<br/>"
        f"<b>Scheduled:</b> {len(report.scheduled)}<br/>"
        f"<b>Unscheduled instruments:</b> {len(report.unscheduled)}",
        st["small"],
    ))
    story.append(Spacer(1, 0.12 * inch))

    header = ["Equipment ID", "Type", "Location", "Maintenance", "Due Date", "Days"]
    for title, views in (
        ("Overdue", report.overdue),
        ("In Progress", report.in_progress),
        ("Scheduled", report.scheduled),
    ):
        story.append(Paragraph(title, st["heading"]))
        story.append(Spacer(1, 0.04 * inch))
        if not views:
            story.append(Paragraph("None.", st["small"]))
        else:
            rows = [
                [v.instrument.eqp_id, v.instrument.instrument_type or "—", v.instrument.location or "—",
                 v.event.type, v.event.due_date.isoformat(), str(v.days_until_due)]
                for v in views
            ]
            story.append(_grid_table(header, rows, st))
        story.append(Spacer(1, 0.12 * inch))

    if report.unscheduled:
        story.append(Paragraph("Unscheduled", st["heading"]))
        story.append(Spacer(1, 0.04 * inch))
        rows = [[i.eqp_id, i.instrument_type or "—", i.location or "—", i.maintenance_type]
                for i in report.unscheduled]
        story.append(_grid_table(["Equipment ID", "Type", "Location", "Maintenance"], rows, st))
        story.append(Spacer(1, 0.12 * inch))

    png_bytes = _render_trend_to_png(trend)
    if png_bytes:
        img = Image(io.BytesIO(png_bytes))
        img.drawWidth = 6.0 * inch
        img.drawHeight = 3.0 * inch
        story.append(img)

    doc.build(story)


def export_all_results_to_directory(repo, base_dir: str | Path, *, progress_callback=None) -> dict:
    """
    Export every maintenance result to PDF files in the given directory.
    Organizes files by instrument type: base_dir / instrument_type / eqp_completeddate.pdf
    Returns dict with: success_count, error_count, errors (list of strings).

    Optional: progress_callback(current, total) called after each result.
    """
    base_dir = Path(base_dir)
    base_dir.mkdir(parents=True, exist_ok=True)
    results = []
    for instrument in repo.list_instruments(include_inactive=True):
        for result in repo.list_results_for_instrument(instrument.id):
            results.append((instrument, result))
    total = len(results)
    success_count = 0
    error_count = 0
    errors = []

    for i, (instrument, result) in enumerate(results):
        subdir = base_dir / _safe_filename(instrument.instrument_type or "Unknown")
        subdir.mkdir(parents=True, exist_ok=True)
        out_path = subdir / f"{_safe_filename(instrument.eqp_id)}_{result.completed_date.isoformat()}.pdf"
        try:
            export_result_to_pdf(repo, result.id, out_path)
            success_count += 1
        except (ValueError, OSError) as e:
            error_count += 1
            errors.append(f"Result {result.id} ({instrument.eqp_id} {result.completed_date}): {e}")
        if progress_callback:
            progress_callback(i + 1, total)

    return {
        "success_count": success_count,
        "error_count": error_count,
        "errors": errors,
    }
