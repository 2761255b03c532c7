"""Prompt templates for the Claude-backed text matcher.

Every matching prompt hands the model a closed candidate set and asks
for exactly one token from it, or the explicit ``NO_MATCH`` sentinel.
The parsers in ``services/text_matcher.py`` reject anything else.
"""

NO_MATCH = "NO_MATCH"
INVALID_DATE = "INVALID_DATE"

APPOINTMENT_TYPE_PROMPT = """A dental patient described the visit they want. Pick the ONE appointment type that fits.

Patient request: "{request}"

Appointment types (id | name | keywords):
{options}

Rules:
- Answer NO_MATCH if the request is unclear or fits more than one type equally. Never guess.
- Only answer with an id from the list above.

Reply with exactly two lines:
MATCH: <id or NO_MATCH>
REASON: <one short sentence>"""

DATE_PROMPT = """Convert the spoken date into a calendar date.

Today is {today_weekday}, {today} (practice timezone {timezone}).
Spoken date: "{phrase}"

Rules:
- Dates are always today or in the future.
- "next <weekday>": if today is that weekday, it means 7 days from today; otherwise the upcoming one.
- A month and day without a year is the next occurrence on or after today.
- A bare day number such as "the 10th" is ambiguous: answer INVALID_DATE.

Reply with only YYYY-MM-DD or INVALID_DATE."""

SLOT_PROMPT = """A patient was offered these appointment times:
{options}

The patient said: "{selection}"

Which option did they choose? Reply with only the option number, or NO_MATCH if they did not clearly choose exactly one."""

CONFIRMATION_PROMPT = """The receptionist restated an appointment and asked "Does that sound correct?".

The patient replied: "{reply}"

Classify the reply:
- AFFIRM: they agree to book it ("yes", "sounds good", "no problem").
- CHANGE: they want a different time. If they name a time of day, append it as CHANGE:<BUCKET>
  where BUCKET is one of EARLY, MORNING, MIDDAY, AFTERNOON, EVENING, LATE, ALL_DAY.
- UNCLEAR: anything else.

Reply with only AFFIRM, CHANGE, CHANGE:<BUCKET> or UNCLEAR."""

NOTE_PROMPT = """Write a one-sentence note for the dental front desk describing why the patient is coming in.

Appointment type: {appointment_type}
What the patient said: "{patient_request}"
{preference_line}
Plain text, at most 25 words, no greeting."""
