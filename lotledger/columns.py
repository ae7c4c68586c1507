# lotledger/columns.py
"""Source column names as they appear in the snapshot header."""

LOT_NUMBER = "Lot number"
VIN = "VIN"
LAST_UPDATED = "Last Updated Time"
CREATED = "Create Date/Time"

# vehicle attributes
YEAR = "Year"
MAKE = "Make"
MODEL_GROUP = "Model Group"
MODEL_DETAIL = "Model Detail"
TRIM = "Trim"
BODY_STYLE = "Body Style"
COLOR = "Color"
ENGINE = "Engine"
DRIVE = "Drive"
TRANSMISSION = "Transmission"
FUEL_TYPE = "Fuel Type"

# lot / site
YARD_NUMBER = "Yard number"
YARD_NAME = "Yard name"
CITY = "Location city"
STATE = "Location state"
COUNTRY = "Location country"
ZIP = "Location ZIP"
TIME_ZONE = "Time Zone"
SALE_DATE = "Sale Date M/D/CY"
SALE_TIME = "Sale time (HHMM)"
SALE_STATUS = "Sale Status"
CURRENT_BID = "High Bid =non-vix,Sealed=Vix"
BUY_IT_NOW = "Buy-It-Now Price"
RETAIL_VALUE = "Est. Retail Value"
REPAIR_COST = "Repair cost"
ODOMETER = "Odometer"
CURRENCY = "Currency Code"
HAS_KEYS = "Has Keys-Yes or No"
DAMAGE = "Damage Description"
SECONDARY_DAMAGE = "Secondary Damage"
TITLE_TYPE = "Sale Title Type"
RUNS_DRIVES = "Runs/Drives"

# columns whose churn says nothing about the lot itself
DIFF_IGNORED = frozenset({LAST_UPDATED, CREATED})
