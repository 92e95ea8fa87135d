IMAGE_ANALYSIS_PROMPT = """Analyze this real estate agency image and provide ONLY a JSON object with this exact format:
{
    "name": "the business name if visible (be very specific, this is critical)",
    "web_url": "any website URL visible in the image (be very specific about official website vs listing URLs)",
    "qr_data": "any QR code content if visible in the image",
    "validation_score": number from 0-100 indicating how clearly this is a real estate agency,
    "validation_reasons": ["list", "of", "reasons", "be very specific about what you see"],
    "condition_score": number from 0-100 indicating the condition of the property,
    "objects_detected": ["list", "of", "objects", "detected", "in", "the", "image"],
    "phone_numbers": ["list", "of", "phone", "numbers", "found"],
    "emails": ["list", "of", "email", "addresses", "found"],
    "business_hours": "business hours if visible (in text format)",
    "confidence": number from 0-1 indicating confidence in business name detection
}

IMPORTANT NOTES:
1. For objects_detected, be very specific about storefront/facade/building/office elements. These decide which photo is the main photo of the agency.
2. Use detailed descriptions like "real estate office storefront", "agency facade", "commercial building entrance".
3. If you see a business name, even if you're not 100% sure, include it with an appropriate confidence.
4. Extract ONLY valid phone numbers and email addresses.
5. Format business hours clearly (e.g., "Mon-Fri: 9:00-18:00").
6. For web_url, prioritize official agency websites over listing URLs. Look for URLs that match the business name.
7. Use null for anything you cannot see.

Return ONLY the JSON object, no other text."""


URL_CLASSIFICATION_PROMPT = """Decide whether this web page belongs to the real estate agency "{business_name}".

Page URL: {url}

Page content:
{page_text}

Respond ONLY with a JSON object in this exact format:
{{
    "isValid": boolean,
    "matchesBusiness": boolean,
    "confidence": number (0-1),
    "webSummary": {{
        "title": string,
        "description": string,
        "location": string,
        "type": string
    }},
    "validationDetails": {{
        "nameMatch": boolean,
        "addressMatch": boolean,
        "isRealEstateSite": boolean,
        "foundEvidence": [string]
    }}
}}

Rules:
- "isValid" is true when the page is reachable, real content (not a parking page or an error page).
- "matchesBusiness" is true only if the page clearly belongs to the named agency.
- In "foundEvidence", say explicitly whether this looks like the agency's "official website" / "main site"
  or like a single property "listing" on a portal.
- Keep the webSummary short and readable, without special characters."""
