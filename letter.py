"""
Indexation notice letter (Mietanpassungsschreiben) as PDF.

The layout is fixed: recipient, place and date, subject block, salutation,
explanation of the index change, rent and ancillary cost tables, a boxed
total and the closing. When a letterhead PDF is configured every page is
stamped onto its first page; from page 2 on the sender box of the
letterhead is covered.
"""

import io
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional
from xml.sax.saxutils import escape

from pypdf import PdfReader, PdfWriter
from reportlab.lib import colors
from reportlab.lib.enums import TA_JUSTIFY, TA_LEFT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle
from reportlab.lib.units import mm
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.platypus import (
    KeepTogether, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle,
)

from helpers import calculate_gross_from_net, format_currency, format_date, format_percent


logger = logging.getLogger(__name__)

VAT_RATE = 19.0

# Sender box of the letterhead, masked on follow-up pages (points, from bottom left)
SENDER_BOX_OFFSET_RIGHT = 230
SENDER_BOX_OFFSET_TOP = 260
SENDER_BOX_WIDTH = 210
SENDER_BOX_HEIGHT = 140

INTRO_TEXT = (
    'gemäß den Regelungen Ihres Mietvertrages wird die Miete an die Entwicklung '
    'des Verbraucherpreisindexes (VPI) angepasst. Grundlage der Anpassung ist die '
    'Veränderung des Indexstandes gegenüber dem zuletzt berücksichtigten Index. '
    'Auf Basis der nachstehenden Berechnung ergibt sich eine Anpassung Ihrer Miete.'
)


@dataclass
class LetterParams:
    tenant_name: str
    effective_date: date
    old_rent: float
    new_rent: float
    applied_pct: float                          # ratio, 0.035 = 3,5 %
    tenant_address_lines: List[str] = field(default_factory=list)
    tenancy_label: str = ''
    property_label: str = ''
    indexation_id: str = ''
    letter_date: Optional[date] = None
    index_change: Optional[float] = None        # raw index change (ratio)
    pass_through_ratio: Optional[float] = None
    previous_index_label: str = ''
    previous_index_value: Optional[float] = None
    current_index_label: str = ''
    current_index_value: Optional[float] = None
    is_gross_19: bool = False
    ancillary_current: Optional[float] = None   # net
    ancillary_new: Optional[float] = None       # net, only when ancillary costs are indexed
    ancillary_vat_rate: Optional[float] = None  # 19, 0 or unknown
    city: str = 'Berlin'
    signatory: str = 'Jakob Webb'


# ── Fonts ──────────────────────────────────────────────────────────────────

def register_fonts(regular_path=None, bold_path=None):
    """
    Register optional TTF fonts. Returns (regular, bold) font names,
    falling back to the built-in Helvetica.
    """
    regular, bold = 'Helvetica', 'Helvetica-Bold'
    if regular_path:
        if 'LetterRegular' not in pdfmetrics.getRegisteredFontNames():
            pdfmetrics.registerFont(TTFont('LetterRegular', regular_path))
        regular = 'LetterRegular'
    if bold_path:
        if 'LetterBold' not in pdfmetrics.getRegisteredFontNames():
            pdfmetrics.registerFont(TTFont('LetterBold', bold_path))
        bold = 'LetterBold'
    return regular, bold


def _styles(regular, bold):
    body = ParagraphStyle('Body', fontName=regular, fontSize=10, leading=14, alignment=TA_LEFT)
    return {
        'body': body,
        'justify': ParagraphStyle('Justify', parent=body, alignment=TA_JUSTIFY, spaceAfter=6),
        'bold': ParagraphStyle('Bold', parent=body, fontName=bold),
        'subject': ParagraphStyle('Subject', parent=body, fontName=bold, leading=13),
    }


def _p(text, style):
    return Paragraph(escape(text or ''), style)


def _amount_table(rows, regular, bold, label_width=95 * mm):
    """rows: (label, value, bold_value)"""
    data = [[label, value] for label, value, _ in rows]
    style = [
        ('FONTNAME', (0, 0), (-1, -1), regular),
        ('FONTSIZE', (0, 0), (-1, -1), 10),
        ('LEFTPADDING', (0, 0), (-1, -1), 0),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 2),
        ('TOPPADDING', (0, 0), (-1, -1), 2),
    ]
    for i, (_, _, is_bold) in enumerate(rows):
        if is_bold:
            style.append(('FONTNAME', (1, i), (1, i), bold))
    table = Table(data, colWidths=[label_width, 50 * mm], hAlign='LEFT')
    table.setStyle(TableStyle(style))
    return table


# ── Content ────────────────────────────────────────────────────────────────

def letter_totals(params):
    """Net and (where VAT applies) gross totals shown in the letter box."""
    ancillary = params.ancillary_new if params.ancillary_new is not None else params.ancillary_current
    new_rent_gross = calculate_gross_from_net(params.new_rent, VAT_RATE) if params.is_gross_19 else None
    ancillary_gross = None
    if ancillary is not None:
        ancillary_gross = (calculate_gross_from_net(ancillary, VAT_RATE)
                           if params.ancillary_vat_rate == 19 else ancillary)

    total_net = round(params.new_rent + (ancillary or 0), 2)
    total_gross = None
    if params.is_gross_19 or params.ancillary_vat_rate == 19:
        total_gross = round((new_rent_gross if new_rent_gross is not None else params.new_rent)
                            + (ancillary_gross or 0), 2)
    return {
        'new_rent_gross': new_rent_gross,
        'ancillary': ancillary,
        'ancillary_gross': ancillary_gross,
        'total_net': total_net,
        'total_gross': total_gross,
    }


def _story(params, regular, bold):
    st = _styles(regular, bold)
    effective = format_date(params.effective_date)
    story = []

    # Recipient
    lines = [params.tenant_name] + [l for l in params.tenant_address_lines if l]
    story.append(Paragraph('<br/>'.join(escape(l) for l in lines), st['body']))
    story.append(Spacer(1, 14 * mm))
    story.append(_p(f'{params.city}, {format_date(params.letter_date or date.today())}', st['body']))
    story.append(Spacer(1, 8 * mm))

    # Subject
    subject = [
        'Hier: Mietanpassung gem. Indexierung Ihres Mietvertrages',
        f'Gültig ab {effective}',
    ]
    if params.tenancy_label:
        subject.append(f'Mietverhältnis: {params.tenancy_label}')
    if params.property_label:
        subject.append(f'Objekt: {params.property_label}')
    if params.indexation_id:
        subject.append(f'Indexation ID: {params.indexation_id}')
    story.append(Paragraph('<br/>'.join(escape(s) for s in subject), st['subject']))
    story.append(Spacer(1, 6 * mm))

    story.append(_p('Sehr geehrte Damen und Herren,', st['body']))
    story.append(Spacer(1, 3 * mm))
    story.append(_p(INTRO_TEXT, st['justify']))

    # Index development
    if params.previous_index_value is not None and params.current_index_value is not None:
        change = params.index_change
        if change is None and params.previous_index_value:
            change = params.current_index_value / params.previous_index_value - 1
        index_rows = [
            (f'Indexstand bisher ({params.previous_index_label})',
             f'{params.previous_index_value:.1f}'.replace('.', ','), False),
            (f'Indexstand neu ({params.current_index_label})',
             f'{params.current_index_value:.1f}'.replace('.', ','), False),
            ('Veränderung', format_percent(change), True),
        ]
        block = [
            Spacer(1, 3 * mm),
            _p('Indexentwicklung (VPI):', st['bold']),
            Spacer(1, 2 * mm),
            _amount_table(index_rows, regular, bold),
            Spacer(1, 3 * mm),
        ]
        pass_through = 1.0 if params.pass_through_ratio is None else params.pass_through_ratio
        block.append(_p(
            f'Die Veränderung des Index beträgt {format_percent(change)}. '
            f'Laut Ihrem Mietvertrag werden davon {format_percent(pass_through)} auf die '
            f'Miete übertragen, woraus sich eine Mietanpassung von '
            f'{format_percent(params.applied_pct)} ergibt.',
            st['justify'],
        ))
        story.append(KeepTogether(block))

    totals = letter_totals(params)

    # Rent
    rent_rows = [
        ('derzeitige Miete netto', format_currency(params.old_rent), True),
        (f'zzgl. Indexanpassung {format_percent(params.applied_pct)}',
         format_currency(params.new_rent - params.old_rent), False),
        ('neue Miete netto', format_currency(params.new_rent), True),
    ]
    if totals['new_rent_gross'] is not None:
        rent_rows.append(('MwSt', '19,0 %', False))
        rent_rows.append(('neue Miete brutto (19 % USt.)', format_currency(totals['new_rent_gross']), True))
    story.append(KeepTogether([
        Spacer(1, 4 * mm),
        _p(f'Die Miete für Ihre Mietfläche setzt sich ab dem {effective} wie folgt zusammen:', st['bold']),
        Spacer(1, 2 * mm),
        _amount_table(rent_rows, regular, bold),
    ]))

    # Ancillary costs
    if params.ancillary_current is not None:
        anc_rows = [('derzeitige Nebenkosten netto', format_currency(params.ancillary_current), True)]
        if params.ancillary_new is not None:
            anc_rows.append(('neue Nebenkosten netto', format_currency(params.ancillary_new), True))
        if params.ancillary_vat_rate == 19:
            label = 'neue' if params.ancillary_new is not None else 'derzeitige'
            anc_rows.append(('MwSt', '19,0 %', False))
            anc_rows.append((f'{label} Nebenkosten brutto (19 % USt.)',
                             format_currency(totals['ancillary_gross']), True))
        story.append(KeepTogether([
            Spacer(1, 4 * mm),
            _p('Nebenkosten / Betriebskosten:', st['bold']),
            Spacer(1, 2 * mm),
            _amount_table(anc_rows, regular, bold),
        ]))

    # Total box
    box_rows = [['Gesamtmiete netto (Miete + Nebenkosten)', format_currency(totals['total_net'])]]
    if totals['total_gross'] is not None:
        box_rows.append(['Gesamtmiete brutto', format_currency(totals['total_gross'])])
    box = Table(box_rows, colWidths=[92 * mm, 40 * mm], hAlign='LEFT')
    box.setStyle(TableStyle([
        ('BOX', (0, 0), (-1, -1), 1, colors.black),
        ('FONTNAME', (0, 0), (0, -1), regular),
        ('FONTNAME', (1, 0), (1, -1), bold),
        ('FONTSIZE', (0, 0), (-1, -1), 10),
        ('LEFTPADDING', (0, 0), (-1, -1), 8),
        ('TOPPADDING', (0, 0), (-1, -1), 4),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 4),
    ]))
    story.append(Spacer(1, 6 * mm))
    story.append(box)

    # Closing
    story.append(Spacer(1, 8 * mm))
    story.append(_p('Für Rückfragen stehen wir Ihnen selbstverständlich gern zur Verfügung.', st['body']))
    story.append(Spacer(1, 6 * mm))
    story.append(_p('Mit freundlichen Grüßen', st['body']))
    story.append(Spacer(1, 12 * mm))
    story.append(_p(f'i.A. {params.signatory}', st['body']))
    return story


# ── Rendering ──────────────────────────────────────────────────────────────

def _mask_sender_box(canvas, doc):
    width, height = doc.pagesize
    canvas.saveState()
    canvas.setFillColor(colors.white)
    canvas.setStrokeColor(colors.white)
    canvas.rect(width - SENDER_BOX_OFFSET_RIGHT, height - SENDER_BOX_OFFSET_TOP,
                SENDER_BOX_WIDTH, SENDER_BOX_HEIGHT, stroke=0, fill=1)
    canvas.restoreState()


def _render_content(params, regular, bold, with_letterhead):
    buf = io.BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=A4,
        leftMargin=25 * mm,
        rightMargin=25 * mm,
        topMargin=(50 if with_letterhead else 25) * mm,
        bottomMargin=30 * mm,
        title='Mietanpassung gem. Indexierung',
        author=params.signatory,
    )
    later = _mask_sender_box if with_letterhead else (lambda canvas, doc: None)
    doc.build(_story(params, regular, bold), onLaterPages=later)
    return buf.getvalue()


def _stamp_on_letterhead(content_pdf, template_path):
    with open(template_path, 'rb') as f:
        template_bytes = f.read()

    writer = PdfWriter()
    for content_page in PdfReader(io.BytesIO(content_pdf)).pages:
        # fresh copy of the letterhead for every page; merge_page mutates
        page = writer.add_page(PdfReader(io.BytesIO(template_bytes)).pages[0])
        page.merge_page(content_page)
    out = io.BytesIO()
    writer.write(out)
    return out.getvalue()


def build_indexation_pdf(params, template_path=None, font_regular=None, font_bold=None):
    """Render the letter and return the PDF bytes."""
    regular, bold = register_fonts(font_regular, font_bold)
    content = _render_content(params, regular, bold, with_letterhead=bool(template_path))
    if not template_path:
        return content
    logger.debug('Stamping letter onto letterhead %s', template_path)
    return _stamp_on_letterhead(content, template_path)
