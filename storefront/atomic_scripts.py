"""
Lua scripts for atomic Redis operations.

Scripts reply with flat arrays of strings: {'OK', ...} on success and
{'ERR', CODE, ...} on a refused operation. Stock scripts reply with a single
integer, negative values being refusal codes.
"""
from typing import List

# Stock script refusal codes
INSUFFICIENT_STOCK = -1
UNKNOWN_PRODUCT = -2
DUPLICATE_RESERVATION = -3
UNMATCHED_RELEASE = -1

# Compare-and-decrement of available stock, recording the reservation
RESERVE_STOCK_SCRIPT = """
local record_key = KEYS[1]
local reservations_key = KEYS[2]
local quantity = tonumber(ARGV[1])
local reservation_id = ARGV[2]

local available = redis.call('HGET', record_key, 'available')
if not available then
    return -2
end

if redis.call('HEXISTS', reservations_key, reservation_id) == 1 then
    return -3
end

available = tonumber(available)
if available < quantity then
    return -1
end

redis.call('HINCRBY', record_key, 'available', -quantity)
redis.call('HSET', reservations_key, reservation_id, quantity)
return available - quantity
"""

# Give back exactly one previously taken reservation
RELEASE_STOCK_SCRIPT = """
local record_key = KEYS[1]
local reservations_key = KEYS[2]
local quantity = tonumber(ARGV[1])
local reservation_id = ARGV[2]

local reserved = redis.call('HGET', reservations_key, reservation_id)
if not reserved or tonumber(reserved) ~= quantity then
    return -1
end

redis.call('HDEL', reservations_key, reservation_id)
return redis.call('HINCRBY', record_key, 'available', quantity)
"""

# Add a line, summing into an existing line for the same product
ADD_ITEM_SCRIPT = """
local cart_key = KEYS[1]
local lines_key = KEYS[2]
local updated_key = KEYS[3]
local lock_key = KEYS[4]
local product_id = ARGV[1]
local quantity = tonumber(ARGV[2])
local max_items = tonumber(ARGV[3])
local max_quantity = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])
local now = ARGV[6]

if redis.call('EXISTS', lock_key) == 1 then
    return {'ERR', 'CHECKOUT_IN_PROGRESS'}
end

local existing_qty = tonumber(redis.call('HGET', cart_key, product_id) or '0')
local new_qty = existing_qty + quantity

-- Validate max quantity per line
if new_qty > max_quantity then
    return {'ERR', 'MAX_QUANTITY_EXCEEDED', tostring(new_qty)}
end

-- Validate max lines per cart (only if adding new line)
if existing_qty == 0 and redis.call('HLEN', cart_key) >= max_items then
    return {'ERR', 'MAX_ITEMS_EXCEEDED'}
end

redis.call('HSET', cart_key, product_id, new_qty)
if existing_qty == 0 then
    redis.call('RPUSH', lines_key, product_id)
end
redis.call('SET', updated_key, now)

-- Refresh TTL
redis.call('EXPIRE', cart_key, ttl)
redis.call('EXPIRE', lines_key, ttl)
redis.call('EXPIRE', updated_key, ttl)

local is_new = '0'
if existing_qty == 0 then
    is_new = '1'
end
return {'OK', tostring(new_qty), is_new}
"""

# Set an absolute line quantity; zero removes the line
UPDATE_QUANTITY_SCRIPT = """
local cart_key = KEYS[1]
local lines_key = KEYS[2]
local updated_key = KEYS[3]
local lock_key = KEYS[4]
local product_id = ARGV[1]
local quantity = tonumber(ARGV[2])
local max_quantity = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])
local now = ARGV[5]

if redis.call('EXISTS', lock_key) == 1 then
    return {'ERR', 'CHECKOUT_IN_PROGRESS'}
end

if redis.call('HEXISTS', cart_key, product_id) == 0 then
    return {'ERR', 'PRODUCT_NOT_FOUND'}
end

if quantity > max_quantity then
    return {'ERR', 'MAX_QUANTITY_EXCEEDED', tostring(quantity)}
end

local removed = '0'
if quantity == 0 then
    redis.call('HDEL', cart_key, product_id)
    redis.call('LREM', lines_key, 0, product_id)
    removed = '1'
else
    redis.call('HSET', cart_key, product_id, quantity)
end

redis.call('SET', updated_key, now)
redis.call('EXPIRE', cart_key, ttl)
redis.call('EXPIRE', lines_key, ttl)
redis.call('EXPIRE', updated_key, ttl)
return {'OK', tostring(quantity), removed}
"""

REMOVE_ITEM_SCRIPT = """
local cart_key = KEYS[1]
local lines_key = KEYS[2]
local updated_key = KEYS[3]
local lock_key = KEYS[4]
local product_id = ARGV[1]
local ttl = tonumber(ARGV[2])
local now = ARGV[3]

if redis.call('EXISTS', lock_key) == 1 then
    return {'ERR', 'CHECKOUT_IN_PROGRESS'}
end

if redis.call('HDEL', cart_key, product_id) == 0 then
    return {'ERR', 'PRODUCT_NOT_FOUND'}
end
redis.call('LREM', lines_key, 0, product_id)

redis.call('SET', updated_key, now)
redis.call('EXPIRE', updated_key, ttl)
return {'OK'}
"""

# Empty a cart without deleting it; only the checkout holding the lock may clear a locked cart
CLEAR_CART_SCRIPT = """
local cart_key = KEYS[1]
local lines_key = KEYS[2]
local updated_key = KEYS[3]
local lock_key = KEYS[4]
local lock_token = ARGV[1]
local ttl = tonumber(ARGV[2])
local now = ARGV[3]

local holder = redis.call('GET', lock_key)
if holder and holder ~= lock_token then
    return {'ERR', 'CHECKOUT_IN_PROGRESS'}
end

local cleared = redis.call('HLEN', cart_key)
redis.call('DEL', cart_key, lines_key)
redis.call('SET', updated_key, now)
redis.call('EXPIRE', updated_key, ttl)
return {'OK', tostring(cleared)}
"""

# Drop the checkout lock only if the caller still holds it
RELEASE_LOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

# Fold a guest cart into a user cart, summing shared lines
MERGE_CART_SCRIPT = """
local source_key = KEYS[1]
local source_lines_key = KEYS[2]
local source_updated_key = KEYS[3]
local source_lock_key = KEYS[4]
local target_key = KEYS[5]
local target_lines_key = KEYS[6]
local target_updated_key = KEYS[7]
local target_lock_key = KEYS[8]
local max_quantity = tonumber(ARGV[1])
local max_items = tonumber(ARGV[2])
local ttl = tonumber(ARGV[3])
local now = ARGV[4]

if redis.call('EXISTS', source_lock_key) == 1 or redis.call('EXISTS', target_lock_key) == 1 then
    return {'ERR', 'CHECKOUT_IN_PROGRESS'}
end

local source_lines = redis.call('LRANGE', source_lines_key, 0, -1)
if #source_lines == 0 then
    return {'OK', '0', '0', '0'}
end

local merged_count = 0
local conflict_count = 0
local dropped_count = 0

for _, product_id in ipairs(source_lines) do
    local source_qty = tonumber(redis.call('HGET', source_key, product_id) or '0')
    local target_qty = tonumber(redis.call('HGET', target_key, product_id) or '0')

    if source_qty > 0 then
        if target_qty > 0 then
            conflict_count = conflict_count + 1
            redis.call('HSET', target_key, product_id, math.min(source_qty + target_qty, max_quantity))
            merged_count = merged_count + 1
        elseif redis.call('HLEN', target_key) >= max_items then
            dropped_count = dropped_count + 1
        else
            redis.call('HSET', target_key, product_id, math.min(source_qty, max_quantity))
            redis.call('RPUSH', target_lines_key, product_id)
            merged_count = merged_count + 1
        end
    end
end

redis.call('SET', target_updated_key, now)
redis.call('EXPIRE', target_key, ttl)
redis.call('EXPIRE', target_lines_key, ttl)
redis.call('EXPIRE', target_updated_key, ttl)

-- Delete source cart after merge
redis.call('DEL', source_key, source_lines_key, source_updated_key)

return {'OK', tostring(merged_count), tostring(conflict_count), tostring(dropped_count)}
"""


class AtomicScripts:
    """Container for the Lua scripts, executed through the RedisClient wrapper"""

    def __init__(self, redis_wrapper):
        """
        Initialize with RedisClient wrapper (not raw redis.Redis client)
        so every script runs with the wrapper's retry logic and error handling
        """
        self.redis_wrapper = redis_wrapper

    def reserve_stock(self, record_key: str, reservations_key: str, quantity: int, reservation_id: str) -> int:
        """Execute reserve script; returns remaining stock or a negative refusal code"""
        return int(self.redis_wrapper.eval(
            RESERVE_STOCK_SCRIPT,
            2,
            record_key,
            reservations_key,
            str(quantity),
            reservation_id
        ))

    def release_stock(self, record_key: str, reservations_key: str, quantity: int, reservation_id: str) -> int:
        """Execute release script; returns new stock or UNMATCHED_RELEASE"""
        return int(self.redis_wrapper.eval(
            RELEASE_STOCK_SCRIPT,
            2,
            record_key,
            reservations_key,
            str(quantity),
            reservation_id
        ))

    def add_item(
        self,
        cart_keys: List[str],
        product_id: str,
        quantity: int,
        max_items: int,
        max_quantity: int,
        ttl: int,
        now: str
    ) -> List[str]:
        """Execute add item script"""
        return self.redis_wrapper.eval(
            ADD_ITEM_SCRIPT,
            4,
            *cart_keys,
            product_id,
            str(quantity),
            str(max_items),
            str(max_quantity),
            str(ttl),
            now
        )

    def update_quantity(
        self,
        cart_keys: List[str],
        product_id: str,
        quantity: int,
        max_quantity: int,
        ttl: int,
        now: str
    ) -> List[str]:
        """Execute update quantity script"""
        return self.redis_wrapper.eval(
            UPDATE_QUANTITY_SCRIPT,
            4,
            *cart_keys,
            product_id,
            str(quantity),
            str(max_quantity),
            str(ttl),
            now
        )

    def remove_item(self, cart_keys: List[str], product_id: str, ttl: int, now: str) -> List[str]:
        """Execute remove item script"""
        return self.redis_wrapper.eval(
            REMOVE_ITEM_SCRIPT,
            4,
            *cart_keys,
            product_id,
            str(ttl),
            now
        )

    def clear_cart(self, cart_keys: List[str], lock_token: str, ttl: int, now: str) -> List[str]:
        """Execute clear cart script"""
        return self.redis_wrapper.eval(
            CLEAR_CART_SCRIPT,
            4,
            *cart_keys,
            lock_token,
            str(ttl),
            now
        )

    def release_lock(self, lock_key: str, lock_token: str) -> bool:
        """Execute lock release script"""
        return bool(self.redis_wrapper.eval(RELEASE_LOCK_SCRIPT, 1, lock_key, lock_token))

    def merge_cart(
        self,
        source_keys: List[str],
        target_keys: List[str],
        max_quantity: int,
        max_items: int,
        ttl: int,
        now: str
    ) -> List[str]:
        """Execute merge cart script"""
        return self.redis_wrapper.eval(
            MERGE_CART_SCRIPT,
            8,
            *source_keys,
            *target_keys,
            str(max_quantity),
            str(max_items),
            str(ttl),
            now
        )
