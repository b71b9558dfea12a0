"""Centralized Lua scripts for Redis atomic operations.

This module is the single source of truth for every multi-step operation the
shared store performs. Each script completes entirely or not at all, so no
process ever observes a half-applied lock, counter or queue transition.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from redis.asyncio import Redis


class LuaScripts:
    """Container for Redis Lua scripts.

    Usage:
        await LuaScripts.run(redis, LuaScripts.COMPARE_AND_DELETE, [key], [owner])
    """

    # ─────────────────────────────────────────────────────────────────────────
    # KEYS: locks and counters
    # ─────────────────────────────────────────────────────────────────────────

    COMPARE_AND_SET: str = (
        # Set a key only if it holds the expected value.
        #
        # KEYS[1]: key
        # ARGV[1]: "1" if the key must be absent, "0" to compare with ARGV[2]
        # ARGV[2]: expected value
        # ARGV[3]: new value
        # ARGV[4]: ttl (seconds, 0 = persistent)
        #
        # Returns:
        #   1: Value written
        #   0: Current value did not match
        "local current = redis.call('GET', KEYS[1])\n"
        "if ARGV[1] == '1' then\n"
        "  if current then return 0 end\n"
        "elseif current ~= ARGV[2] then\n"
        "  return 0\n"
        "end\n"
        "if tonumber(ARGV[4]) > 0 then\n"
        "  redis.call('SET', KEYS[1], ARGV[3], 'EX', ARGV[4])\n"
        "else\n"
        "  redis.call('SET', KEYS[1], ARGV[3])\n"
        "end\n"
        "return 1\n"
    )

    COMPARE_AND_DELETE: str = (
        # Delete a key if it holds the expected value.
        #
        # KEYS[1]: key (e.g., recrawl lock)
        # ARGV[1]: expected value (lock holder)
        #
        # Returns:
        #   1: Key deleted
        #   0: Key missing or held by someone else
        #
        # INVARIANT: Only the actual holder can release.
        "if redis.call('GET', KEYS[1]) == ARGV[1] then\n"
        "  return redis.call('DEL', KEYS[1])\n"
        "end\n"
        "return 0\n"
    )

    INCR_WITH_EXPIRY: str = (
        # Increment a windowed counter.
        #
        # KEYS[1]: counter key
        # ARGV[1]: window (seconds)
        #
        # Returns: {count, seconds left in window}
        #
        # INVARIANT: The window starts at the first increment and is never
        # extended by later increments. A counter that somehow lost its TTL
        # gets a fresh window instead of living forever.
        "local count = redis.call('INCR', KEYS[1])\n"
        "if count == 1 then\n"
        "  redis.call('EXPIRE', KEYS[1], ARGV[1])\n"
        "end\n"
        "local ttl = redis.call('TTL', KEYS[1])\n"
        "if ttl < 0 then\n"
        "  redis.call('EXPIRE', KEYS[1], ARGV[1])\n"
        "  ttl = tonumber(ARGV[1])\n"
        "end\n"
        "return {count, ttl}\n"
    )

    # ─────────────────────────────────────────────────────────────────────────
    # HASHES: cache entries
    # ─────────────────────────────────────────────────────────────────────────

    REPLACE_HASH: str = (
        # Replace a hash wholesale.
        #
        # KEYS[1]: hash key
        # ARGV[1]: ttl (seconds, 0 = persistent)
        # ARGV[2..]: field, value pairs
        "redis.call('DEL', KEYS[1])\n"
        "redis.call('HSET', KEYS[1], unpack(ARGV, 2))\n"
        "if tonumber(ARGV[1]) > 0 then\n"
        "  redis.call('EXPIRE', KEYS[1], ARGV[1])\n"
        "end\n"
        "return 1\n"
    )

    TOUCH_HASH: str = (
        # Bump a counter field on an existing hash.
        #
        # KEYS[1]: hash key
        # ARGV[1]: counter field
        # ARGV[2]: increment
        # ARGV[3..]: field, value pairs to set alongside
        #
        # Returns:
        #   1: Hash existed and was updated
        #   0: Hash missing (never recreated)
        "if redis.call('EXISTS', KEYS[1]) == 0 then return 0 end\n"
        "redis.call('HINCRBY', KEYS[1], ARGV[1], ARGV[2])\n"
        "if #ARGV > 2 then\n"
        "  redis.call('HSET', KEYS[1], unpack(ARGV, 3))\n"
        "end\n"
        "return 1\n"
    )

    # ─────────────────────────────────────────────────────────────────────────
    # QUEUE: job lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    ADD_JOB: str = (
        # Persist a new job and make it visible to workers.
        #
        # KEYS[1]: job hash
        # KEYS[2]: waiting zset for the job's priority
        # KEYS[3]: per-cache-key index of unfinished jobs
        # ARGV[1]: job id
        # ARGV[2]: ready-at score (ms)
        # ARGV[3..]: field, value pairs
        "redis.call('HSET', KEYS[1], unpack(ARGV, 3))\n"
        "redis.call('ZADD', KEYS[2], ARGV[2], ARGV[1])\n"
        "redis.call('SADD', KEYS[3], ARGV[1])\n"
        "return 1\n"
    )

    CLAIM_NEXT: str = (
        # Claim the first ready waiting job, highest priority first.
        #
        # KEYS[1]: active zset (scored by lease expiry)
        # KEYS[2..]: waiting zsets in priority order (scored by ready-at)
        # ARGV[1]: now (ms)
        # ARGV[2]: lease until (ms)
        # ARGV[3]: lease token
        # ARGV[4]: worker id
        # ARGV[5]: job hash key prefix
        #
        # Returns: claimed job id, or nil when nothing is ready
        #
        # INVARIANT: Ids whose hash is gone or no longer waiting are dropped
        # from the waiting set and skipped.
        "for i = 2, #KEYS do\n"
        "  while true do\n"
        "    local ids = redis.call('ZRANGEBYSCORE', KEYS[i], '-inf', ARGV[1], 'LIMIT', 0, 1)\n"
        "    if #ids == 0 then break end\n"
        "    local id = ids[1]\n"
        "    redis.call('ZREM', KEYS[i], id)\n"
        "    local job_key = ARGV[5] .. id\n"
        "    if redis.call('HGET', job_key, 'state') == 'waiting' then\n"
        "      redis.call('HSET', job_key, 'state', 'active', 'lease_token', ARGV[3],\n"
        "        'worker_id', ARGV[4], 'lease_until', ARGV[2], 'started_at', ARGV[1])\n"
        "      redis.call('ZADD', KEYS[1], ARGV[2], id)\n"
        "      return id\n"
        "    end\n"
        "  end\n"
        "end\n"
        "return false\n"
    )

    TRANSITION: str = (
        # Compare-and-swap a job's state.
        #
        # KEYS[1]: job hash
        # KEYS[2]: source zset
        # KEYS[3]: destination zset
        # KEYS[4]: per-cache-key index
        # ARGV[1]: job id
        # ARGV[2]: comma separated states the job must currently be in
        # ARGV[3]: lease token the job must carry ('' = any)
        # ARGV[4]: '1' to remove the id from KEYS[2]
        # ARGV[5]: '1' to add the id to KEYS[3]
        # ARGV[6]: destination score
        # ARGV[7]: '1' to remove the id from KEYS[4]
        # ARGV[8]: ttl for the job hash (seconds, 0 = keep)
        # ARGV[9]: JSON object of fields to set
        # ARGV[10]: JSON object of integer fields to increment
        #
        # Returns:
        #   1: Transition applied
        #   0: Job missing, in another state, or leased by someone else
        #
        # INVARIANT: Terminal states are never listed as expected states by
        # callers, so a finished job can not move again.
        "local job_key = KEYS[1]\n"
        "local state = redis.call('HGET', job_key, 'state')\n"
        "if not state then return 0 end\n"
        "local allowed = false\n"
        "for s in string.gmatch(ARGV[2], '[^,]+') do\n"
        "  if s == state then allowed = true end\n"
        "end\n"
        "if not allowed then return 0 end\n"
        "if ARGV[3] ~= '' and redis.call('HGET', job_key, 'lease_token') ~= ARGV[3] then\n"
        "  return 0\n"
        "end\n"
        "for k, v in pairs(cjson.decode(ARGV[9])) do\n"
        "  redis.call('HSET', job_key, k, v)\n"
        "end\n"
        "for k, v in pairs(cjson.decode(ARGV[10])) do\n"
        "  redis.call('HINCRBY', job_key, k, v)\n"
        "end\n"
        "if ARGV[4] == '1' then redis.call('ZREM', KEYS[2], ARGV[1]) end\n"
        "if ARGV[5] == '1' then redis.call('ZADD', KEYS[3], ARGV[6], ARGV[1]) end\n"
        "if ARGV[7] == '1' then redis.call('SREM', KEYS[4], ARGV[1]) end\n"
        "if tonumber(ARGV[8]) > 0 then redis.call('EXPIRE', job_key, ARGV[8]) end\n"
        "return 1\n"
    )

    RECLAIM_STALLED: str = (
        # Requeue or fail active jobs whose lease has expired.
        #
        # KEYS[1]: active zset
        # KEYS[2]: failed zset
        # ARGV[1]: now (ms)
        # ARGV[2]: max stalled count
        # ARGV[3]: job hash key prefix
        # ARGV[4]: waiting zset key prefix (priority appended)
        # ARGV[5]: per-cache-key index prefix
        # ARGV[6]: ttl for failed job hashes (seconds, 0 = keep)
        #
        # Returns: flat list {id, 'requeued' | 'failed', ...}
        #
        # INVARIANT: A job is failed once it stalled more than ARGV[2] times,
        # which stops a poison job from bouncing between workers forever.
        "local out = {}\n"
        "local now = tonumber(ARGV[1])\n"
        "local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])\n"
        "for _, id in ipairs(ids) do\n"
        "  local job_key = ARGV[3] .. id\n"
        "  local state = redis.call('HGET', job_key, 'state')\n"
        "  if state ~= 'active' then\n"
        "    redis.call('ZREM', KEYS[1], id)\n"
        "  elseif tonumber(redis.call('HGET', job_key, 'lease_until') or '0') <= now then\n"
        "    redis.call('ZREM', KEYS[1], id)\n"
        "    local stalled = redis.call('HINCRBY', job_key, 'stalled_count', 1)\n"
        "    if stalled > tonumber(ARGV[2]) then\n"
        "      redis.call('HSET', job_key, 'state', 'failed', 'error_code', 'STALLED',\n"
        "        'error_message', 'job stalled more than allowable limit',\n"
        "        'finished_at', ARGV[1], 'lease_token', '')\n"
        "      redis.call('ZADD', KEYS[2], ARGV[1], id)\n"
        "      redis.call('SREM', ARGV[5] .. redis.call('HGET', job_key, 'cache_key'), id)\n"
        "      if tonumber(ARGV[6]) > 0 then redis.call('EXPIRE', job_key, ARGV[6]) end\n"
        "      table.insert(out, id)\n"
        "      table.insert(out, 'failed')\n"
        "    else\n"
        "      local priority = redis.call('HGET', job_key, 'priority')\n"
        "      redis.call('HSET', job_key, 'state', 'waiting', 'lease_token', '',\n"
        "        'worker_id', '', 'ready_at', ARGV[1])\n"
        "      redis.call('ZADD', ARGV[4] .. priority, ARGV[1], id)\n"
        "      table.insert(out, id)\n"
        "      table.insert(out, 'requeued')\n"
        "    end\n"
        "  end\n"
        "end\n"
        "return out\n"
    )

    # ─────────────────────────────────────────────────────────────────────────
    # Helper methods
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    def flatten(mapping) -> list[str]:
        """Flatten a mapping into field, value pairs for HSET."""
        pairs: list[str] = []
        for field, value in mapping.items():
            pairs.append(str(field))
            pairs.append(str(value))
        return pairs

    @staticmethod
    async def run(
        redis: "Redis",
        script: str,
        keys: list[str],
        args: list[Any],
    ) -> Any:
        """Execute a script against Redis.

        Args:
            redis: Redis client instance
            script: One of the scripts above
            keys: KEYS for the script
            args: ARGV for the script

        Returns:
            The raw script result
        """
        # NOTE: This is the Redis EVAL command for Lua scripts, not Python's eval()
        return await redis.eval(script, len(keys), *keys, *[str(a) for a in args])
