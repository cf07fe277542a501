from datetime import date

TEXT_SYSTEM_PROMPT = """You are a financial AI expert. Post-process Korean OCR text into structured JSON.

The input may contain MULTIPLE transactions. Extract ALL of them.

DATE RULES:
1. Only extract dates that are explicitly written in the text. Relative words have already been
   replaced with absolute dates.
2. A date at the top of a message block applies to later transactions in that block that lack one.
3. If no date is found, set the date to null.
4. If only month/day is written (e.g. "01/10"), use the current year {year}.
5. Always write dates as "YYYY-MM-DD" or "YYYY-MM-DD HH:mm".

GIFTICON RULES:
- A list or grid of coupons is one transaction per coupon.
- "D-30" style counters mean expiry_date = today ({today}) + N days.
- A date under "from. NAME" is usually the received date, not the expiry.
- A date next to "유효기간", "기한", "until" or "~" is the expiry_date.

DOCUMENT TYPES ("type"):
- STORE_PAYMENT: card approval, payment notification.
- RECEIPT: paper receipt.
- BANK_TRANSFER: withdrawal/deposit notification with balance.
- TRANSFER: person-to-person remittance (Toss, KakaoPay).
- INVITATION: wedding or birthday invitation.
- OBITUARY: funeral notice (부고).
- GIFTICON: coupon or voucher with a barcode.
- BILL: utility bill or tax notice with a due date.
- SOCIAL: group spending split between members.
- APPOINTMENT: reservation, hospital visit, delivery schedule.
- UNKNOWN: anything else.

CATEGORY GUIDE (expenses):
[식비] 식료품 (mart, CU, GS25), 외식/배달 (restaurant, cafe, Baemin)
[주거/통신/광열] 주거/관리비, 통신비
[교통/차량] 대중교통, 자차/유지
[문화/여가] OTT/구독, 여행, 문화생활
[쇼핑/생활] 온라인, 오프라인
[의료/건강] [교육] [비소비지출/금융]

KOREAN WEDDING NAMES: in "[아버지]·[어머니] 의 장남 [신랑]" the couple are the names after
장남/장녀/차남/차녀. Write main_name as "신랑 ♥ 신부".

Return JSON only:
{{"transactions": [{{"type": "...", "confidence": 0.0-1.0, "subtype": string|null,
  "evidence": [string], "warnings": [string], ...kind specific fields}}]}}

Kind specific fields:
- STORE_PAYMENT / RECEIPT: merchant, amount, currency, date, category, sub_category, memo
- BANK_TRANSFER: transaction_type ("deposit"|"withdrawal"), target_name, amount, date,
  balance_after, is_utility, category, sub_category, memo
- TRANSFER: amount, is_received, sender_name, date, memo
- INVITATION: event_type, event_date, event_location, main_name, sender_name, account_number,
  recommended_amount, recommendation_reason
- OBITUARY: deceased, funeral_location, event_date, main_name, account_number
- GIFTICON: product_name, brand_name, estimated_price, expiry_date, barcode_number, sender_name
- BILL: title, amount, due_date, virtual_account
- SOCIAL: amount, location, members, date
- APPOINTMENT: title, location, date, memo
{few_shots}"""

VISION_SYSTEM_PROMPT = """You are a financial AI expert. Analyze an image of a Korean document.

Classify it as one of GIFTICON, INVITATION, OBITUARY, TRANSFER, BANK_TRANSFER, STORE_PAYMENT,
RECEIPT, BILL, SOCIAL, APPOINTMENT or UNKNOWN.

For wedding invitations the couple are the names after 장남/장녀/차남/차녀, not the parents.
Write dates as "YYYY-MM-DD" or "YYYY-MM-DD HH:mm".

Return JSON only:
{"type": "...", "confidence": 0.0-1.0, "data": {...kind specific fields, snake_case}}"""

TEXT_USER_PROMPT = "Analyze this text and extract ALL transactions:\n\n{text}"
VISION_USER_PROMPT = "Analyze this image."


def build_text_system_prompt(few_shot_section: str = "", today: date | None = None) -> str:
    today = today or date.today()
    return TEXT_SYSTEM_PROMPT.format(year=today.year, today=today.isoformat(), few_shots=few_shot_section)


STATIC_FEW_SHOTS: list[dict] = [
    {
        "document_type": "STORE_PAYMENT",
        "input_text": "[현대카드]-승인 김*한 1,200,000원 06개월 01/16 16:10 소니코리아",
        "output_json": {
            "type": "STORE_PAYMENT",
            "subtype": "CARD_APPROVAL",
            "merchant": "소니코리아",
            "amount": 1200000,
            "date": "2024-01-16 16:10",
            "category": "쇼핑",
        },
    },
    {
        "document_type": "STORE_PAYMENT",
        "input_text": "신한카드(00) 해외승인 김*한님 01/16 15:50 USD 15.99 NETFLIX.COM",
        "output_json": {
            "type": "STORE_PAYMENT",
            "subtype": "CARD_APPROVAL",
            "merchant": "NETFLIX.COM",
            "amount": 15.99,
            "currency": "USD",
            "date": "2024-01-16 15:50",
            "category": "구독",
        },
    },
    {
        "document_type": "STORE_PAYMENT",
        "input_text": "롯데카드 김*한님 USD -15.99 해외승인취소 01/16 18:00 NETFLIX",
        "output_json": {
            "type": "STORE_PAYMENT",
            "subtype": "CARD_CANCEL",
            "merchant": "NETFLIX",
            "amount": -15.99,
            "currency": "USD",
            "date": "2024-01-16 18:00",
            "category": "구독",
        },
    },
    {
        "document_type": "OBITUARY",
        "input_text": "[부고] 故조보훈님께서 별세하셨기에 알려드립니다. 빈소: 창원파티마병원 장례식장 101호실 발인: 07월 11일",
        "output_json": {
            "type": "OBITUARY",
            "deceased": "조보훈",
            "funeral_location": "창원파티마병원 장례식장",
            "event_date": "2024-07-11 08:00",
            "account_number": "보훈은행 3585-1566-3585",
        },
    },
    {
        "document_type": "INVITATION",
        "input_text": "[청첩장] 서로의 다름을 채워가며... 일시: 12월 25일 토요일 오후 1시 장소: 더채플앳청담",
        "output_json": {
            "type": "INVITATION",
            "subtype": "WEDDING",
            "event_type": "wedding",
            "event_date": "2024-12-25 13:00",
            "event_location": "더채플앳청담",
            "main_name": "홍길동",
            "account_number": "우리은행 1002-123-456789",
        },
    },
    {
        "document_type": "BANK_TRANSFER",
        "input_text": "[무신사] 주문번호 입금요청: 54,000원 입금계좌: 신한은행 (주)무신사 입금기한: 2024/01/17 23:59",
        "output_json": {
            "type": "BANK_TRANSFER",
            "transaction_type": "withdrawal",
            "amount": 54000,
            "target_name": "(주)무신사",
            "date": "2024-01-17 23:59",
            "category": "쇼핑",
        },
    },
    {
        "document_type": "BILL",
        "input_text": "[강북구청] 1월 등록면허세 납부기한: 01월 31일까지 납부금액: 40,500원 (납기 후 금액: 41,710원)",
        "output_json": {
            "type": "BILL",
            "subtype": "TAX",
            "title": "1월 등록면허세",
            "amount": 40500,
            "due_date": "2024-01-31",
            "virtual_account": "우리은행 1234-567-890123",
        },
    },
    {
        "document_type": "APPOINTMENT",
        "input_text": "[코드엠샵] 주문번호 20240118-001 배송중입니다. 상품명: 겨울 코트",
        "output_json": {
            "type": "APPOINTMENT",
            "subtype": "DELIVERY",
            "title": "택배 도착 예정",
            "location": "자택",
            "date": "2024-01-20 14:00",
            "memo": "[코드엠샵] 주문번호 20240118-001 (배송중)",
        },
    },
    {
        "document_type": "STORE_PAYMENT",
        "input_text": "[Toss] 25,000원 결제완료. 가맹점: 무신사스토어 일시: 02/15 12:30",
        "output_json": {
            "type": "STORE_PAYMENT",
            "merchant": "무신사스토어",
            "amount": 25000,
            "date": "2024-02-15 12:30",
            "category": "쇼핑",
        },
    },
    {
        "document_type": "APPOINTMENT",
        "input_text": "[Web발신] 서울대병원 내과 진료 예약안내. 일시: 3월 10일(월) 09:30. 본관 2층으로 오십시오.",
        "output_json": {
            "type": "APPOINTMENT",
            "subtype": "HOSPITAL",
            "title": "서울대병원 진료",
            "location": "서울대병원 내과",
            "date": "2024-03-10 09:30",
            "memo": "예약 시간 10분 전 도착 요망",
        },
    },
]
