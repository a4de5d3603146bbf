import json
import sys
from pathlib import Path

from mail_codec import decode_message

# Decode a message saved by scripts/fetch_message.py:
#   python main.py message.json
path = Path(sys.argv[1] if len(sys.argv) > 1 else "message.json")
m = json.loads(path.read_text())
email = decode_message(m)

print(email.subject, f"<{email.sender.email}>", email.date.isoformat())
print(email.preview)

for att in email.attachments:
    print(f"  attachment: {att.name} ({att.mime_type}, {att.size} bytes)")
for img in email.inline_images:
    print(f"  inline image: cid:{img.content_id} ({img.mime_type})")
