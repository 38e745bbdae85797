from typing import List

from concierge.entities import SessionContext

AGENT_INSTRUCTIONS = """
You are a personal beauty concierge inside a visual storefront. Every reply you write is
shown to the shopper AND drives the scene behind the chat (background, product layout, checkout).

Reply contract:
- Start with 1-3 short conversational sentences for the shopper.
- When the scene should change, end the reply with ONE JSON object on its own line:
  {"uiDirective": {"action": "<ACTION>", "payload": {...}}}
- Never wrap the JSON in markdown fences. Never mention the JSON, the directive or its field names in prose.

Actions:
- SHOW_PRODUCT: exactly one product. payload.products = [ {id, name, category, description, price} ].
- SHOW_PRODUCTS: two or more products. Same product shape.
- CHANGE_SCENE: only the ambience changes. payload.sceneContext = {setting, mood, backgroundPrompt}.
- WELCOME_SCENE: first greeting only. payload.welcomeMessage, payload.welcomeSubtext, payload.sceneContext.
- INITIATE_CHECKOUT: the shopper wants to buy. payload.checkoutData = {products: [...]}.
- CONFIRM_ORDER: the shopper confirmed the order. payload.orderConfirmation = {...}.
- RESET_SCENE: the conversation is over.
- IDENTIFY_CUSTOMER: the shopper gave an email. payload.customerEmail.
- CAPTURE_ONLY: nothing visual changes but you recorded customer data.

Scene context:
- setting is one of: neutral, bathroom, travel, outdoor, lifestyle, bedroom, vanity, gym, office.
- Set "generateBackground": true only when the shopper describes a specific new place or mood.
- Keep the current setting when nothing about the place changed.

Captured data:
- When you learn a life event (trip, wedding, birthday, anniversary, new job, skin concern...) add
  payload.captures = [{"type": "meaningful_event", "label": "Event Captured: <short summary>"}].
- When you learn a profile fact (skin type, routine, budget...) add
  {"type": "profile_enrichment", "label": "Profile Updated: <field>"}.
- Do not announce captures in prose.
"""

PROVENANCE_RULES = """
[DATA USAGE RULES]
Context below is tagged by provenance. Follow these rules strictly:
- [CONFIRMED]: Customer stated or declared this. Reference explicitly ("You mentioned...", "Based on your profile...").
- [OBSERVED/INFERRED]: Behavioral signals or agent inferences. Reference gently ("You were looking at...", "It seems like...").
- [INFLUENCE ONLY]: Third-party appended data. NEVER mention directly. Use only to curate product selection, scene mood, or ordering of recommendations.
""".strip()

# missing profile field -> conversational follow-ups that may teach us the field
ENRICHMENT_PROBES = {
    "Birthday": ["Any special occasions coming up?"],
    "Anniversary": ["Shopping for someone special?", "Any celebrations on the horizon?"],
    "Morning routine": ["How much time do you usually have in the morning?"],
    "Exercise": ["Do you work out regularly? It can affect your skin!"],
    "Work environment": ["Do you work indoors or outdoors? Helps me pick the right SPF."],
    "Beauty priority": ["What matters most to you in skincare?"],
    "Price sensitivity": ["Do you have a budget in mind?"],
}


def _section(lines: List[str], title: str, values: List[str]) -> None:
    values = [v for v in values if v]
    if not values:
        return
    lines.append("")
    lines.append(title)
    lines.extend(f"  {v}" for v in values)


def build_welcome_message(ctx: SessionContext) -> str:
    """
    The hidden first turn of a conversation: who the shopper is, what the agent
    may say about them and what it should try to learn.
    """
    lines: List[str] = ["[WELCOME]"]

    if ctx.identity_tier == "appended":
        lines.append("Customer: First-time visitor (identity resolved by a data partner, NOT a hand-raiser)")
        lines.append("Identity: appended")
        lines.append(
            "[INSTRUCTION] Do NOT greet by name. Do NOT reference specific demographic or interest data "
            "directly. Use appended signals only to curate product selections and scene choices."
        )
    elif ctx.identity_tier == "anonymous":
        lines.append("Customer: Anonymous visitor")
        lines.append("Identity: anonymous")
    else:
        lines.append(f"Customer: {ctx.name} (greet by first name)")
        lines.append(f"Email: {ctx.email or 'unknown'}")
        lines.append(f"Identity: {ctx.identity_tier}")
        if ctx.email:
            lines.append(f"[ACTION INPUT VALUES] customerId = \"{ctx.email}\", customerEmail = \"{ctx.email}\"")
        lines.append(
            "[INSTRUCTION] Keep your welcome greeting SHORT, 2 sentences maximum. Greet by first name. "
            "If there is ONE standout context item (an upcoming trip, a recent life event, a loyalty "
            "milestone), acknowledge it briefly. End with a single warm invitation or open question."
        )

    lines.append("")
    lines.append(PROVENANCE_RULES)

    confirmed = []
    if ctx.skin_type:
        confirmed.append(f"Skin type: {ctx.skin_type}")
    if ctx.concerns:
        confirmed.append(f"Concerns: {', '.join(ctx.concerns)}")
    if ctx.recent_purchases:
        confirmed.append(f"Recent purchases: {', '.join(ctx.recent_purchases)}")
    if ctx.loyalty_tier:
        points = f" ({ctx.loyalty_points} points)" if ctx.loyalty_points else ""
        confirmed.append(f"Loyalty: {ctx.loyalty_tier}{points}")
    confirmed.extend(ctx.meaningful_events)
    confirmed.extend(ctx.captured_profile)
    _section(lines, "[CONFIRMED - OK to reference directly]", confirmed)

    observed = list(ctx.recent_activity) + [f"Browsed {b}" for b in ctx.browse_interests]
    _section(lines, "[OBSERVED/INFERRED - reference gently]", observed)

    _section(lines, "[INFLUENCE ONLY - use to curate selections, NEVER reference directly]", ctx.appended_interests)

    if ctx.missing_profile_fields:
        lines.append("")
        lines.append(f"[ENRICHMENT OPPORTUNITY] Try to naturally learn: {', '.join(ctx.missing_profile_fields)}")

    return "\n".join(lines)
